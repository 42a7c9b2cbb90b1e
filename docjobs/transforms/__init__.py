"""
Transform capability

Document mutation itself lives outside this package. Deployments register
their implementations in a TransformRegistry and point the worker at it
(``docjobs worker --transform mypackage.transforms:registry``).
"""

from .base import BaseTransform
from .registry import TransformRegistry, load_transform

__all__ = ['BaseTransform', 'TransformRegistry', 'load_transform']
