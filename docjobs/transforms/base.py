from abc import ABC, abstractmethod
from typing import Any, Dict


class BaseTransform(ABC):
    """
    Base class for document transforms

    A transform rewrites the bytes of one document for one operation. It must
    be deterministic for the same input and options, raise on failure and
    stay picklable so it can run in a worker process.
    """

    operation: str = ''

    @abstractmethod
    def apply(self, data: bytes, options: Dict[str, Any]) -> bytes:
        """
        Transform a document

        Args:
            data: Input document bytes
            options: Validated options for the operation

        Returns:
            Output document bytes
        """
        pass
