"""Declarative environment variables.

Each variable is described once by an ``EnvVarSpec`` and read through
``parse``. ``validate`` checks a whole list at startup so a misconfigured
deployment fails before it touches any external system.
"""

import os
from typing import Any, Callable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError

from . import log

logger = log.get_logger(__name__)


def _identity(value: str) -> str:
    return value


class EnvVarSpec(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    id: str
    default: Optional[str] = None
    parse: Callable[[str], Any] = _identity
    type: Tuple[Any, Any] = (str, ...)
    is_optional: bool = False
    is_secret: bool = False


class EnvVarError(ValueError):
    pass


def raw(spec: EnvVarSpec) -> Optional[str]:
    value = os.environ.get(spec.id)
    if value is None or value == "":
        return spec.default
    return value


def parse(spec: EnvVarSpec) -> Any:
    """Return the parsed value of *spec*, or None for an unset optional var."""
    value = raw(spec)
    if value is None:
        if spec.is_optional:
            return None
        raise EnvVarError(f"Environment variable {spec.id} is not set")
    try:
        return spec.parse(value)
    except (TypeError, ValueError) as e:
        if spec.is_secret:
            # The parser error usually echoes the value
            raise EnvVarError(f"Environment variable {spec.id}=<secret> is invalid") from None
        raise EnvVarError(f"Environment variable {spec.id}={value!r} is invalid: {e}") from e


def validate(specs: List[EnvVarSpec]) -> bool:
    ok = True
    for spec in specs:
        try:
            value = parse(spec)
            if value is not None:
                TypeAdapter(spec.type[0]).validate_python(value, strict=True)
        except EnvVarError as e:
            logger.error(str(e))
            ok = False
        except ValidationError as e:
            logger.error(f"Environment variable {spec.id} has the wrong type: {e.errors()[0]['msg']}")
            ok = False
    return ok
