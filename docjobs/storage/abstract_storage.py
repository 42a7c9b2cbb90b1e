from abc import ABC, abstractmethod
from typing import Optional


class AbstractStorage(ABC):
    """
    Abstract base class for object storage backends

    Holds the input and output bytes of jobs under opaque keys.
    Implementations raise FileNotFoundError for a missing key and
    ServiceUnavailable when the backing store cannot be reached.
    """

    @abstractmethod
    def put(self, key: str, data: bytes) -> str:
        """
        Store bytes under the given key, replacing any existing object

        Args:
            key: Storage key
            data: Content to store

        Returns:
            URL of the stored object
        """
        pass

    @abstractmethod
    def get(self, key: str) -> bytes:
        """
        Load the bytes stored under the given key

        Args:
            key: Storage key

        Returns:
            Stored content

        Raises:
            FileNotFoundError: If nothing is stored under the key
        """
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """
        Delete the object stored under the given key

        Returns:
            True if an object was removed, False otherwise
        """
        pass

    @abstractmethod
    def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    def get_url(self, key: str, expires_in: Optional[int] = None) -> str:
        """
        Get a URL for downloading the object

        Args:
            key: Storage key
            expires_in: Optional expiration time in seconds

        Returns:
            URL for accessing the object
        """
        pass
