"""
Operation Options with Pydantic Validation

Every operation has its own strict option schema. Options are validated at
admission; a job only ever stores the normalized, validated option bag.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from docjobs.entitlements import Operation
from docjobs.exceptions import InvalidOptions


class _Options(BaseModel):
    model_config = ConfigDict(extra='forbid', str_strip_whitespace=True, frozen=True)


class CompressOptions(_Options):
    operation: Literal['compress'] = 'compress'
    quality: Literal['low', 'medium', 'high'] = 'medium'
    remove_images: bool = False
    optimize_for_web: bool = False


class MergeOptions(_Options):
    operation: Literal['merge'] = 'merge'
    file_order: List[str] = Field(..., min_length=2, max_length=20)
    add_bookmarks: bool = False


class SplitOptions(_Options):
    operation: Literal['split'] = 'split'
    split_type: Literal['pages', 'range', 'every']
    pages: Optional[List[Annotated[int, Field(gt=0)]]] = None
    start_page: Optional[int] = Field(None, gt=0)
    end_page: Optional[int] = Field(None, gt=0)
    split_every: Optional[int] = Field(None, gt=0, le=100)

    @model_validator(mode='after')
    def check_split_type(self) -> 'SplitOptions':
        if self.split_type == 'pages' and not self.pages:
            raise ValueError("pages is required when split_type is 'pages'")
        if self.split_type == 'range':
            if self.start_page is None or self.end_page is None:
                raise ValueError("start_page and end_page are required when split_type is 'range'")
            if self.end_page < self.start_page:
                raise ValueError("end_page must not be before start_page")
        if self.split_type == 'every' and self.split_every is None:
            raise ValueError("split_every is required when split_type is 'every'")
        return self


class WatermarkOptions(_Options):
    operation: Literal['watermark'] = 'watermark'
    text: str = Field(..., min_length=1, max_length=100)
    opacity: float = Field(0.5, ge=0.1, le=1.0)
    position: Literal['center', 'top-left', 'top-right', 'bottom-left', 'bottom-right'] = 'center'
    font_size: int = Field(24, ge=8, le=72)
    color: str = Field('#000000', pattern=r'^#[0-9A-Fa-f]{6}$')
    rotation: int = Field(45, ge=-360, le=360)
    pages: Literal['all', 'first', 'last'] = 'all'


class ExtractOptions(_Options):
    operation: Literal['extract'] = 'extract'
    extract_text: bool = True
    extract_images: bool = False
    extract_metadata: bool = True
    extract_forms: bool = False
    pages: Union[Literal['all'], List[Annotated[int, Field(gt=0)]]] = 'all'
    image_format: Literal['png', 'jpg'] = 'png'
    image_quality: int = Field(90, ge=1, le=100)


class Permissions(_Options):
    printing: bool = False
    copying: bool = False
    editing: bool = False
    annotating: bool = False


class ProtectOptions(_Options):
    operation: Literal['protect'] = 'protect'
    password: str = Field(..., min_length=4, max_length=50)
    encryption_level: Literal['standard', 'high'] = 'standard'
    permissions: Permissions = Field(default_factory=Permissions)


class SignOptions(_Options):
    operation: Literal['sign'] = 'sign'
    field_name: str = Field('Signature1', max_length=100)
    page: int = Field(1, gt=0)
    x: float = Field(100, ge=0)
    y: float = Field(100, ge=0)
    width: float = Field(200, gt=0)
    height: float = Field(50, gt=0)
    reason: str = Field('Document approval', max_length=200)
    location: str = Field('Digital', max_length=200)
    signer_name: str = Field('Digital Signer', min_length=1, max_length=200)
    signature_text: Optional[str] = Field(None, max_length=200)


OperationOptions = Annotated[
    Union[
        CompressOptions,
        MergeOptions,
        SplitOptions,
        WatermarkOptions,
        ExtractOptions,
        ProtectOptions,
        SignOptions,
    ],
    Field(discriminator='operation')
]

_adapter: TypeAdapter = TypeAdapter(OperationOptions)
_OPERATION_TAGS = {op.value for op in Operation}


def _format_error(error: Dict[str, Any]) -> str:
    location = '.'.join(str(part) for part in error.get('loc', ()) if part not in _OPERATION_TAGS)
    return f"{location}: {error['msg']}" if location else error['msg']


def validate_options(operation: Union[Operation, str], raw: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Validate a raw option bag for ``operation``.

    Args:
        operation: Requested operation
        raw: Options as received from the caller

    Returns:
        Normalized options (defaults filled in, ``operation`` key removed)

    Raises:
        InvalidOptions: With one message per failing field
    """
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise InvalidOptions(errors=['options must be an object'])

    try:
        operation = Operation(operation).value
    except ValueError:
        raise InvalidOptions(errors=[f"unknown operation: {operation}"])

    if raw.get('operation', operation) != operation:
        raise InvalidOptions(errors=['operation: does not match the requested operation'])

    try:
        parsed = _adapter.validate_python({**raw, 'operation': operation})
    except ValidationError as e:
        raise InvalidOptions(errors=[_format_error(error) for error in e.errors()]) from e

    return parsed.model_dump(exclude={'operation'})
