"""Pydantic base schema utilities for engine models."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class BaseSchema(BaseModel):
    """
    Base Pydantic model for engine-internal schemas.

    Configures common Pydantic behaviors:
    - ``populate_by_name=True``: Allow initialization by alias or field name.
    - ``extra="forbid"``: Prevent unknown fields from slipping into the model, ensuring strict validation.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        extra="forbid",
    )


class DocumentSchema(BaseModel):
    """
    Base Pydantic model for sections of a capability document.

    Capability documents are authored by third parties and evolve across
    protocol revisions, so unknown fields are kept (``extra="allow"``) rather
    than rejected. Loaded documents are immutable (``frozen=True``).
    """

    model_config = ConfigDict(
        populate_by_name=True,
        extra="allow",
        frozen=True,
    )
