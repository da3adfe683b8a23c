"""
Common data models.
"""

from typing import ClassVar

from pydantic import BaseModel


class SecureBaseModel(BaseModel):
    """
    A Pydantic BaseModel that redacts fields containing Personally Identifiable
    Information (PII) in its string representation so that message content and
    addresses never leak into log lines.

    Child classes define a `_PII_FIELDS` set naming the fields to redact.
    """

    _PII_FIELDS: ClassVar[set[str]] = set()

    def __repr_args__(self):
        args = super().__repr_args__()
        if not self._PII_FIELDS:
            return args

        return [
            (key, "*****" if key in self._PII_FIELDS else value)
            for key, value in args
        ]
