from typing import Dict, Any

from .abstract_storage import AbstractStorage
from .filesystem_storage import FileSystemStorage
from .s3_storage import S3Storage


class StorageFactory:
    """
    Builds the object store that holds job inputs and outputs

    The backend is picked by the ``type`` key of the flattened storage
    configuration (``DocJobsConfig.get_storage_config()``).
    """

    _storage_classes = {
        'filesystem': FileSystemStorage,
        's3': S3Storage,
    }

    @classmethod
    def register_storage(cls, name: str, storage_class: type) -> None:
        """
        Make an additional backend selectable by ``storage.type``

        Raises:
            ValueError: If the class is not an AbstractStorage
        """
        if not isinstance(storage_class, type) or not issubclass(storage_class, AbstractStorage):
            raise ValueError("Storage class must inherit from AbstractStorage")
        cls._storage_classes[name.lower()] = storage_class

    @classmethod
    def create_storage(cls, config: Dict[str, Any]) -> AbstractStorage:
        """
        Instantiate the configured backend

        Args:
            config: Backend settings plus ``type`` (defaults to filesystem)

        Raises:
            ValueError: If no backend is registered under ``type``
        """
        storage_type = config.get('type', 'filesystem')
        storage_class = cls._storage_classes.get(storage_type)
        if storage_class is None:
            raise ValueError(f"Unknown storage type: {storage_type}")
        return storage_class(config)

    @classmethod
    def get_available_storages(cls) -> Dict[str, type]:
        return dict(cls._storage_classes)
