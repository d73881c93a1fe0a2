"""A small recursive schema validator for outbound requests.

Schemas are built with the module-level builders and composed::

    request_schema = obj({
        "max_tokens": number(minimum=1, maximum=4096, integer=True).optional(),
        "temperature": number(minimum=0, maximum=1).optional(),
        "messages": array(obj({"role": string(choices=ROLES)}), min_items=1),
    })
    request_schema.parse(payload)

``parse`` raises ``ValidationError`` whose ``field`` is the dotted path to the
first offending value (e.g. ``messages.0.role``).
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .errors import ValidationError

_MISSING = object()


@dataclass
class ParseResult:
    """Outcome of ``Schema.safe_parse``."""

    success: bool
    data: Any = None
    error: Optional[ValidationError] = None


def _join(path: str, part: Any) -> str:
    return f"{path}.{part}" if path else str(part)


class Schema:
    """Base class for all schemas."""

    type_name = "any"

    def parse(self, value: Any) -> Any:
        """Validate ``value`` and return its cleaned form.

        Raises:
            ValidationError: If the value does not match.
        """
        return self._check(value, "")

    def safe_parse(self, value: Any) -> ParseResult:
        try:
            return ParseResult(success=True, data=self.parse(value))
        except ValidationError as e:
            return ParseResult(success=False, error=e)

    def optional(self) -> "Schema":
        return Optional_(self)

    def nullable(self) -> "Schema":
        return Nullable(self)

    def default(self, value: Any) -> "Schema":
        return Default(self, value)

    def _check(self, value: Any, path: str) -> Any:
        if value is _MISSING:
            self._fail("Required", path, None)
        return value

    def _fail(self, message: str, path: str, value: Any) -> None:
        field = path or None
        where = f" at '{path}'" if path else ""
        raise ValidationError(f"{message}{where}", field=field, value=value)


class AnySchema(Schema):
    pass


class StringSchema(Schema):
    type_name = "string"

    def __init__(
        self,
        min_length: Optional[int] = None,
        max_length: Optional[int] = None,
        pattern: Optional[str] = None,
        choices: Optional[Iterable[str]] = None,
    ):
        self.min_length = min_length
        self.max_length = max_length
        self.pattern = re.compile(pattern) if pattern else None
        self.choices = tuple(choices) if choices is not None else None

    def _check(self, value: Any, path: str) -> Any:
        super()._check(value, path)
        if not isinstance(value, str):
            self._fail(f"Expected string, received {type(value).__name__}", path, value)
        if self.min_length is not None and len(value) < self.min_length:
            self._fail(f"String must contain at least {self.min_length} character(s)", path, value)
        if self.max_length is not None and len(value) > self.max_length:
            self._fail(f"String must contain at most {self.max_length} character(s)", path, value)
        if self.pattern is not None and not self.pattern.search(value):
            self._fail("String does not match pattern", path, value)
        if self.choices is not None and value not in self.choices:
            self._fail(f"Expected one of {', '.join(self.choices)}", path, value)
        return value


class NumberSchema(Schema):
    type_name = "number"

    def __init__(
        self,
        minimum: Optional[float] = None,
        maximum: Optional[float] = None,
        integer: bool = False,
    ):
        self.minimum = minimum
        self.maximum = maximum
        self.integer = integer

    def _check(self, value: Any, path: str) -> Any:
        super()._check(value, path)
        # bool is an int subclass
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            self._fail(f"Expected number, received {type(value).__name__}", path, value)
        if value != value:
            self._fail("Expected number, received NaN", path, value)
        if self.integer and not float(value).is_integer():
            self._fail("Expected integer", path, value)
        if self.minimum is not None and value < self.minimum:
            self._fail(f"Number must be greater than or equal to {self.minimum}", path, value)
        if self.maximum is not None and value > self.maximum:
            self._fail(f"Number must be less than or equal to {self.maximum}", path, value)
        return value


class BooleanSchema(Schema):
    type_name = "boolean"

    def _check(self, value: Any, path: str) -> Any:
        super()._check(value, path)
        if not isinstance(value, bool):
            self._fail(f"Expected boolean, received {type(value).__name__}", path, value)
        return value


class ArraySchema(Schema):
    type_name = "array"

    def __init__(
        self,
        item: Schema,
        min_items: Optional[int] = None,
        max_items: Optional[int] = None,
    ):
        self.item = item
        self.min_items = min_items
        self.max_items = max_items

    def _check(self, value: Any, path: str) -> Any:
        super()._check(value, path)
        if isinstance(value, (str, bytes, dict)) or not isinstance(value, Sequence):
            self._fail(f"Expected array, received {type(value).__name__}", path, value)
        if self.min_items is not None and len(value) < self.min_items:
            self._fail(f"Array must contain at least {self.min_items} element(s)", path, len(value))
        if self.max_items is not None and len(value) > self.max_items:
            self._fail(f"Array must contain at most {self.max_items} element(s)", path, len(value))
        return [self.item._check(item, _join(path, index)) for index, item in enumerate(value)]


class ObjectSchema(Schema):
    type_name = "object"

    def __init__(self, shape: Dict[str, Schema], allow_extra: bool = True):
        self.shape = shape
        self.allow_extra = allow_extra

    def _check(self, value: Any, path: str) -> Any:
        super()._check(value, path)
        if not isinstance(value, dict):
            self._fail(f"Expected object, received {type(value).__name__}", path, value)
        result: Dict[str, Any] = {}
        for key, schema in self.shape.items():
            checked = schema._check(value.get(key, _MISSING), _join(path, key))
            if checked is not _MISSING:
                result[key] = checked
        extra = [key for key in value if key not in self.shape]
        if extra:
            if not self.allow_extra:
                self._fail(f"Unrecognized key '{extra[0]}'", _join(path, extra[0]), value[extra[0]])
            for key in extra:
                result[key] = value[key]
        return result


class UnionSchema(Schema):
    type_name = "union"

    def __init__(self, options: List[Schema]):
        self.options = options

    def _check(self, value: Any, path: str) -> Any:
        errors = []
        for option in self.options:
            try:
                return option._check(value, path)
            except ValidationError as e:
                errors.append(e)
        # Report the error from the option that matched deepest
        deepest = max(errors, key=lambda e: len(e.field or ""), default=None)
        if deepest is not None and deepest.field and deepest.field != (path or None):
            raise deepest
        names = " | ".join(option.type_name for option in self.options)
        self._fail(f"Expected {names}", path, value)


class LiteralSchema(Schema):
    type_name = "literal"

    def __init__(self, expected: Any):
        self.expected = expected

    def _check(self, value: Any, path: str) -> Any:
        super()._check(value, path)
        if value != self.expected:
            self._fail(f"Expected {self.expected!r}", path, value)
        return value


class NoneSchema(Schema):
    type_name = "null"

    def _check(self, value: Any, path: str) -> Any:
        if value is not None and value is not _MISSING:
            self._fail("Expected null", path, value)
        return None


class Optional_(Schema):
    """Accepts a missing key or ``None``."""

    def __init__(self, inner: Schema):
        self.inner = inner
        self.type_name = inner.type_name

    def _check(self, value: Any, path: str) -> Any:
        if value is _MISSING:
            return _MISSING
        if value is None:
            return None
        return self.inner._check(value, path)


class Nullable(Schema):
    """Accepts ``None`` but still requires the key."""

    def __init__(self, inner: Schema):
        self.inner = inner
        self.type_name = inner.type_name

    def _check(self, value: Any, path: str) -> Any:
        if value is None:
            return None
        return self.inner._check(value, path)


class Default(Schema):
    """Substitutes ``value`` for a missing key or ``None``."""

    def __init__(self, inner: Schema, value: Any):
        self.inner = inner
        self.value = value
        self.type_name = inner.type_name

    def _check(self, value: Any, path: str) -> Any:
        if value is _MISSING or value is None:
            return self.value
        return self.inner._check(value, path)


def string(
    min_length: Optional[int] = None,
    max_length: Optional[int] = None,
    pattern: Optional[str] = None,
    choices: Optional[Iterable[str]] = None,
) -> StringSchema:
    return StringSchema(min_length, max_length, pattern, choices)


def number(
    minimum: Optional[float] = None,
    maximum: Optional[float] = None,
    integer: bool = False,
) -> NumberSchema:
    return NumberSchema(minimum, maximum, integer)


def boolean() -> BooleanSchema:
    return BooleanSchema()


def array(item: Schema, min_items: Optional[int] = None, max_items: Optional[int] = None) -> ArraySchema:
    return ArraySchema(item, min_items, max_items)


def obj(shape: Dict[str, Schema], allow_extra: bool = True) -> ObjectSchema:
    return ObjectSchema(shape, allow_extra)


def union(*options: Schema) -> UnionSchema:
    return UnionSchema(list(options))


def literal(value: Any) -> LiteralSchema:
    return LiteralSchema(value)


def none() -> NoneSchema:
    return NoneSchema()


def any_() -> AnySchema:
    return AnySchema()
