"""Component metadata: case-insensitive property lookup and decoding into dataclasses.

Metadata is a mapping of string keys to string values. It is decoded into a
dataclass instance field by field, converting each string according to the
field's annotation. Keys match case-insensitively. A field's options live in
its ``dataclasses.field`` metadata:

- ``"key"``: the metadata key to read (defaults to the field name);
- ``"aliases"``: comma-separated alternative keys, used when the key is absent;
- ``"squash"``: True for a nested dataclass whose fields are read from the
  same mapping. When its annotation is written as text, the nested type is
  taken from the field's default or default factory.

Supported annotations are ``str``, ``int``, ``float``, ``bool`` (truthy
strings), ``timedelta``, ``Duration``, ``ByteSize``, ``list[str]`` and
``list[timedelta]``, each optionally wrapped in ``Optional`` or ``| None``.
"""

from __future__ import annotations

import dataclasses
import json
import re
import types
from datetime import timedelta
from decimal import Decimal
from typing import Any, List, Mapping, Optional, Union, get_args, get_origin

from svckit.bytesize import ByteSize, parse_quantity
from svckit.duration import Duration, parse_duration

_TRUTHY = frozenset({"y", "yes", "true", "t", "on", "1"})
_OCTAL = re.compile(r"[+-]?0\d+")
_GENERIC = re.compile(r"([\w.]+)\[(.*)\]", re.DOTALL)

_NAMED_TYPES: dict[str, Any] = {
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "timedelta": timedelta,
    "datetime.timedelta": timedelta,
    "Duration": Duration,
    "ByteSize": ByteSize,
    "None": type(None),
    "NoneType": type(None),
}


class Properties(dict):
    """Metadata properties as a key-value dictionary."""

    def get_property(self, *keys: str) -> Optional[str]:
        """Return the value of the first key present, case-insensitively, or None."""
        return get_metadata_property(self, *keys)

    def get_property_with_matched_key(self, *keys: str) -> Optional[tuple[str, str]]:
        """Return ``(key, value)`` for the first key present, or None."""
        return get_metadata_property_with_matched_key(self, *keys)

    def decode(self, result: Any) -> None:
        """Decode these properties into the dataclass instance ``result``."""
        _decode_map(dict(self), result)


def get_metadata_property(props: Optional[Mapping[str, str]], *keys: str) -> Optional[str]:
    """Return the value of the first of ``keys`` found in ``props``, or None."""
    found = get_metadata_property_with_matched_key(props, *keys)
    return found[1] if found is not None else None


def get_metadata_property_with_matched_key(
    props: Optional[Mapping[str, str]], *keys: str
) -> Optional[tuple[str, str]]:
    """Return ``(key, value)`` for the first of ``keys`` found, case-insensitively, or None.

    The returned key is the one asked for, not the one stored in ``props``.
    """
    lowered = {k.lower(): v for k, v in (props or {}).items()}
    for key in keys:
        if key.lower() in lowered:
            return key, lowered[key.lower()]
    return None


def decode_metadata(input: Any, result: Any) -> None:
    """Decode metadata into the dataclass instance ``result``.

    ``input`` may be a mapping, a JSON object string, or an object with a
    ``properties`` mapping. Raises TypeError when it cannot be read as a
    string mapping, ValueError when a value cannot be converted.
    """
    if not isinstance(input, (Mapping, str, bytes)):
        props = getattr(input, "properties", None)
        if isinstance(props, Mapping):
            input = props
    try:
        md = _to_string_map(input)
    except TypeError as exc:
        raise TypeError(f"input object cannot be cast to map[string]string: {exc}") from exc
    _decode_map(md, result)


def resolve_aliases(md: dict[str, str], result_type: Any) -> None:
    """Fill in missing keys of ``md`` from the aliases declared on a dataclass.

    ``result_type`` is a dataclass or an instance of one. Raises ValueError
    when two keys of ``md`` differ only in case, TypeError for a non-dataclass.
    """
    keys: dict[str, str] = {}
    for key in md:
        lowered = key.lower()
        if lowered in keys:
            raise ValueError(f"key {lowered} is duplicate in the metadata")
        keys[lowered] = key

    cls = result_type if isinstance(result_type, type) else type(result_type)
    if not dataclasses.is_dataclass(cls):
        raise TypeError(f"not a dataclass: {cls.__name__}")
    _resolve_aliases_in_type(md, keys, cls)


def _resolve_aliases_in_type(md: dict[str, str], keys: dict[str, str], cls: type) -> None:
    for f in dataclasses.fields(cls):
        if f.metadata.get("squash"):
            nested = _squash_type(f)
            if nested is not None:
                _resolve_aliases_in_type(md, keys, nested)
            continue

        key = f.metadata.get("key", f.name)
        if key.lower() in keys:
            continue

        aliases = f.metadata.get("aliases", "")
        if isinstance(aliases, str):
            aliases = aliases.split(",") if aliases else []
        for alias in (a.lower() for a in aliases):
            if alias in keys:
                md[key] = md[keys[alias]]
                break


def _decode_map(md: dict[str, str], result: Any) -> None:
    try:
        resolve_aliases(md, result)
    except ValueError as exc:
        raise ValueError(f"failed to resolve aliases: {exc}") from exc
    except TypeError as exc:
        raise TypeError(f"failed to resolve aliases: {exc}") from exc
    if isinstance(result, type):
        raise TypeError("result must be a dataclass instance, not a class")
    _decode_into({k.lower(): v for k, v in md.items()}, result)


def _decode_into(md: dict[str, str], target: Any) -> None:
    for f in dataclasses.fields(target):
        if f.metadata.get("squash"):
            nested = getattr(target, f.name)
            if nested is None:
                nested_type = _squash_type(f)
                if nested_type is None:
                    raise TypeError(f"cannot determine the type of squashed field '{f.name}'")
                nested = nested_type()
                setattr(target, f.name, nested)
            _decode_into(md, nested)
            continue

        key = f.metadata.get("key", f.name)
        if key.lower() not in md:
            continue
        annotation = _field_type(f)
        try:
            value = _convert(md[key.lower()], annotation)
        except ValueError as exc:
            raise ValueError(f"error decoding '{key}': {exc}") from exc
        setattr(target, f.name, value)


def _field_type(f: dataclasses.Field) -> Any:
    if isinstance(f.type, str):
        return _parse_annotation(f.type)
    return f.type


def _squash_type(f: dataclasses.Field) -> Optional[type]:
    """The dataclass type of a squashed field, or None when it cannot be told."""
    if not isinstance(f.type, str):
        nested = _unwrap_optional(f.type)
        if isinstance(nested, type) and dataclasses.is_dataclass(nested):
            return nested
    if f.default_factory is not dataclasses.MISSING:
        factory = f.default_factory
        if isinstance(factory, type):
            candidate = factory
        else:
            candidate = type(factory())
        if dataclasses.is_dataclass(candidate):
            return candidate
    if f.default is not dataclasses.MISSING and f.default is not None:
        candidate = type(f.default)
        if dataclasses.is_dataclass(candidate):
            return candidate
    return None


def _split_top_level(text: str, separator: str) -> list[str]:
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for char in text:
        if char == "[":
            depth += 1
        elif char == "]":
            depth -= 1
        if char == separator and depth == 0:
            parts.append("".join(current))
            current = []
        else:
            current.append(char)
    parts.append("".join(current))
    return parts


def _parse_annotation(text: str) -> Any:
    """Resolve an annotation written as text into one of the supported types."""
    text = text.strip().strip("'\"")
    parts = _split_top_level(text, "|")
    if len(parts) > 1:
        return Union[tuple(_parse_annotation(p) for p in parts)]

    match = _GENERIC.fullmatch(text)
    if match:
        head = match.group(1).rsplit(".", 1)[-1]
        inner = match.group(2)
        if head == "Optional":
            return Optional[_parse_annotation(inner)]
        if head in ("list", "List"):
            return List[_parse_annotation(inner)]
        if head == "Union":
            return Union[tuple(_parse_annotation(p) for p in _split_top_level(inner, ","))]
        raise TypeError(f"unsupported field type: {text!r}")

    if text in _NAMED_TYPES:
        return _NAMED_TYPES[text]
    raise TypeError(f"unsupported field type: {text!r}")


def _unwrap_optional(annotation: Any) -> Any:
    if get_origin(annotation) in (Union, types.UnionType):
        args = [a for a in get_args(annotation) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return annotation


def _is_truthy(value: str) -> bool:
    return value.strip().lower() in _TRUTHY


def _parse_int(value: str) -> int:
    text = value or "0"
    if _OCTAL.fullmatch(text):
        return int(text, 8)
    return int(text, 0)


def _parse_duration_or_seconds(text: str) -> timedelta:
    try:
        return parse_duration(text)
    except ValueError as duration_error:
        try:
            seconds = int(text, 10)
        except ValueError:
            raise ValueError(f'{duration_error}\ninvalid integer "{text}"') from None
        return timedelta(seconds=seconds)


def _convert_duration(value: str) -> timedelta:
    return _parse_duration_or_seconds(value) if value != "" else timedelta(0)


def _convert_duration_list(value: str) -> list[timedelta]:
    return [
        _parse_duration_or_seconds(part.strip())
        for part in value.split(",")
        if part.strip()
    ]


def _convert(value: str, annotation: Any) -> Any:
    target = _unwrap_optional(annotation)
    if target is bool:
        return _is_truthy(value)
    if target is str:
        return value
    if target is int:
        return _parse_int(value)
    if target is float:
        return float(value or "0")
    if target is timedelta:
        return _convert_duration(value)
    if target is Duration:
        return Duration(_convert_duration(value))
    if target is ByteSize:
        try:
            return parse_quantity(value)
        except ValueError as exc:
            raise ValueError(f"value is not a valid quantity: {exc}") from exc
    if get_origin(target) is list:
        args = get_args(target)
        element = args[0] if args else str
        if element is str:
            return value.split(",")
        if element is timedelta:
            return _convert_duration_list(value)
    raise TypeError(f"unsupported field type: {annotation!r}")


def _to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode()
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return format(Decimal(repr(value)), "f")
    if isinstance(value, (Duration, ByteSize)):
        return str(value)
    raise TypeError(f"unable to cast {value!r} of type {type(value).__name__} to string")


def _to_string_map(input: Any) -> dict[str, str]:
    if isinstance(input, (str, bytes)):
        try:
            input = json.loads(input)
        except ValueError as exc:
            raise TypeError(f"invalid JSON object: {exc}") from exc
    if not isinstance(input, Mapping):
        raise TypeError(f"unable to cast {type(input).__name__} to a mapping")
    return {str(k): _to_string(v) for k, v in input.items()}