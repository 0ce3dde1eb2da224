from __future__ import annotations

import json
from typing import Any

from ..extensions import db


def status_column(enum_cls, default=None, **kwargs):
    """
    Column for a closed status enumeration.

    Stored as VARCHAR (no native DB enum) so new members only need a code
    change, but values outside the enum are rejected on load and bind.
    """
    return db.Column(
        db.Enum(
            enum_cls,
            native_enum=False,
            create_constraint=False,
            length=32,
            validate_strings=True,
            values_callable=lambda members: [m.value for m in members],
        ),
        nullable=kwargs.pop("nullable", False),
        default=default,
        **kwargs,
    )


def dump_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, default=str)


def load_json(raw: str | None) -> Any:
    if not raw:
        return None
    return json.loads(raw)


def enum_value(value):
    return value.value if value is not None and hasattr(value, "value") else value
