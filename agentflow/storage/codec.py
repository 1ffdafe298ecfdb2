"""JSON encoding of structured fields at the storage boundary.

Structured fields (capabilities, input/output, metadata, performance) travel
as text in the store. The core works with the typed forms from
:mod:`agentflow.core.payloads`; the store is the only caller of this module.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from agentflow.core.errors import PersistenceError

ModelT = TypeVar("ModelT", bound=BaseModel)

_capabilities = TypeAdapter(List[str])
_json_object = TypeAdapter(Dict[str, Any])


def encode_capabilities(capabilities: List[str]) -> str:
    return _capabilities.dump_json(capabilities).decode()


def decode_capabilities(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    try:
        return _capabilities.validate_json(raw)
    except PydanticValidationError as exc:
        raise PersistenceError(f"Corrupt capabilities payload: {exc}") from exc


def encode_object(value: Optional[Dict[str, Any]]) -> Optional[str]:
    if value is None:
        return None
    return _json_object.dump_json(value).decode()


def decode_object(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    try:
        return _json_object.validate_json(raw)
    except PydanticValidationError as exc:
        raise PersistenceError(f"Corrupt JSON payload: {exc}") from exc


def encode_model(model: Optional[BaseModel]) -> Optional[str]:
    if model is None:
        return None
    return model.model_dump_json(exclude_none=True)


def decode_model(model_cls: Type[ModelT], raw: Optional[str]) -> Optional[ModelT]:
    if raw is None:
        return None
    try:
        return model_cls.model_validate_json(raw)
    except PydanticValidationError as exc:
        raise PersistenceError(f"Corrupt {model_cls.__name__} payload: {exc}") from exc
