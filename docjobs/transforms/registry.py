import importlib
import logging
from typing import Any, Callable, Dict, List, Union

from docjobs.entitlements import Operation
from .base import BaseTransform

logger = logging.getLogger(__name__)

Handler = Union[BaseTransform, Callable[[bytes, Dict[str, Any]], bytes]]


class TransformRegistry:
    """
    Dispatches ``apply(operation, data, options)`` to per-operation handlers

    Usage:
        registry = TransformRegistry()
        registry.register('compress', CompressTransform())
        output = registry.apply('compress', data, {'quality': 'low'})
    """

    def __init__(self):
        self._handlers: Dict[str, Handler] = {}

    def register(self, operation: Union[Operation, str], handler: Handler) -> None:
        """
        Register the handler of an operation, replacing any previous one

        Args:
            operation: Operation name
            handler: BaseTransform instance or ``handler(data, options) -> bytes``
        """
        key = Operation(operation).value
        if not isinstance(handler, BaseTransform) and not callable(handler):
            raise ValueError("Transform handler must be a BaseTransform or a callable")
        self._handlers[key] = handler
        logger.debug(f"Registered transform for {key}")

    def supports(self, operation: Union[Operation, str]) -> bool:
        return str(getattr(operation, 'value', operation)) in self._handlers

    def operations(self) -> List[str]:
        return sorted(self._handlers)

    def apply(self, operation: Union[Operation, str], data: bytes, options: Dict[str, Any]) -> bytes:
        key = str(getattr(operation, 'value', operation))
        handler = self._handlers.get(key)
        if handler is None:
            raise LookupError(f"No transform registered for operation: {key}")
        if isinstance(handler, BaseTransform):
            return handler.apply(data, options)
        return handler(data, options)

    __call__ = apply


def load_transform(path: str) -> Any:
    """
    Load a transform object from a ``module:attribute`` path

    The attribute may be a TransformRegistry, a BaseTransform class or
    instance, any callable with the ``(operation, data, options)`` signature,
    or a zero-argument factory returning one of those.
    """
    module_name, _, attribute = path.partition(':')
    if not module_name or not attribute:
        raise ValueError(f"Transform path must look like 'module:attribute', got {path!r}")

    module = importlib.import_module(module_name)
    try:
        target = getattr(module, attribute)
    except AttributeError:
        raise ValueError(f"Module {module_name} has no attribute {attribute}")

    if isinstance(target, type):
        target = target()
    if isinstance(target, BaseTransform):
        single = TransformRegistry()
        single.register(target.operation, target)
        target = single
    elif not isinstance(target, TransformRegistry) and callable(target) and getattr(target, '__code__', None) is not None \
            and target.__code__.co_argcount == 0:
        target = target()

    if not callable(target):
        raise ValueError(f"{path} is not a transform")
    return target
