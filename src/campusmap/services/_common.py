"""Small helpers shared by the service modules."""

from __future__ import annotations

from typing import Any, TypeVar

import pydantic

from campusmap.core.errors import ValidationError

M = TypeVar("M", bound=pydantic.BaseModel)


def validate_input(model: type[M], data: Any) -> M:
    """Validate caller input, turning pydantic errors into `ValidationError`."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}" for err in exc.errors()
        )
        raise ValidationError(problems) from exc
