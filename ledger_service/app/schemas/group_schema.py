"""
schemas/group_schema.py — Marshmallow schemas for group and participant endpoints.

Validation responsibility:
  - This file: field types, string lengths, non-empty checks (including trim),
    duplicate participant ids.
  - services/group_service.py: GROUP_NOT_FOUND (requires DB lookup).

IMPORTANT: Inherits from marshmallow.Schema directly — see extensions.py.
"""

from __future__ import annotations

from marshmallow import Schema, ValidationError, fields, validate, validates

from ledger_service.app.errors import ErrorCode


# validate.Length(min=1) alone allows whitespace-only strings like "   ".
# This validator strips first, mirroring CHECK(LENGTH(TRIM(name)) > 0).

def _validate_non_empty_after_trim(value: str) -> None:
    """Raises ValidationError if the string is blank or contains only whitespace."""
    if not value.strip():
        raise ValidationError("This field must not be blank or contain only whitespace.")


_participant_id_field = fields.Str(
    validate=[validate.Length(min=1, max=128), _validate_non_empty_after_trim],
)


def _validate_unique_participants(value: list[str]) -> None:
    if len(value) != len(set(value)):
        raise ValidationError(ErrorCode.DUPLICATE_PARTICIPANT)


class CreateGroupSchema(Schema):
    """POST /groups — name plus the initial participant list (may be empty)."""

    name = fields.Str(
        required=True,
        validate=[
            validate.Length(
                min=1,
                max=100,
                error="Group name must be between 1 and 100 characters.",
            ),
            _validate_non_empty_after_trim,
        ],
    )

    participant_ids = fields.List(
        _participant_id_field,
        load_default=list,
    )

    @validates("participant_ids")
    def validate_participant_ids(self, value: list[str], **kwargs) -> None:
        _validate_unique_participants(value)


class SetParticipantsSchema(Schema):
    """
    PUT /groups/:id/participants — replaces the whole participant list.
    An empty list is allowed and clears the group's balances.
    """

    participant_ids = fields.List(
        _participant_id_field,
        required=True,
    )

    @validates("participant_ids")
    def validate_participant_ids(self, value: list[str], **kwargs) -> None:
        _validate_unique_participants(value)
