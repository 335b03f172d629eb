"""Extraction schema kinds used by crawl submissions.

A schema is a tagged union discriminated on ``kind``:

- ``EventsSchema``      dated events (title, date, location, ...)
- ``ActivitiesSchema``  recurring programs and classes
- ``VenuesSchema``      places that host activities
- ``CustomSchema``      an admin-supplied JSON schema document

Each known kind describes the fields of one item and wraps them in a JSON
schema whose top-level object holds a list under ``list_key``.  The
conversion service dispatches on the same union to find that list again.
"""

from __future__ import annotations

from typing import Annotated, Any, ClassVar, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from activity_harvester.core.exceptions import ValidationError

_STRING = {"type": "string"}
_STRING_LIST = {"type": "array", "items": {"type": "string"}}


class _KnownSchema(BaseModel):
    """Common behaviour of the predefined schema kinds."""

    name: ClassVar[str]
    description: ClassVar[str]
    examples: ClassVar[tuple[str, ...]]
    list_key: ClassVar[str]
    item_properties: ClassVar[dict[str, dict[str, Any]]]
    required: ClassVar[tuple[str, ...]]

    def document(self) -> dict[str, Any]:
        """JSON schema wrapping a list of items under :attr:`list_key`."""
        return {
            "type": "object",
            "properties": {
                self.list_key: {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": self.item_properties,
                        "required": list(self.required),
                    },
                }
            },
            "required": [self.list_key],
        }

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "examples": list(self.examples),
            "schema": self.document(),
        }


class EventsSchema(_KnownSchema):
    kind: Literal["events"] = "events"

    name: ClassVar[str] = "Events"
    description: ClassVar[str] = "Dated events such as storytimes, performances and festivals"
    examples: ClassVar[tuple[str, ...]] = ("library event calendars", "museum event listings")
    list_key: ClassVar[str] = "events"
    item_properties: ClassVar[dict[str, dict[str, Any]]] = {
        "title": _STRING,
        "description": _STRING,
        "date": _STRING,
        "time": _STRING,
        "location": _STRING,
        "address": _STRING,
        "price": _STRING,
        "registration_url": _STRING,
        "age_groups": _STRING_LIST,
    }
    required: ClassVar[tuple[str, ...]] = ("title", "location")


class ActivitiesSchema(_KnownSchema):
    kind: Literal["activities"] = "activities"

    name: ClassVar[str] = "Activities"
    description: ClassVar[str] = "Recurring classes, camps and programs"
    examples: ClassVar[tuple[str, ...]] = ("swim lesson schedules", "art class catalogs")
    list_key: ClassVar[str] = "activities"
    item_properties: ClassVar[dict[str, dict[str, Any]]] = {
        "name": _STRING,
        "description": _STRING,
        "age_groups": _STRING_LIST,
        "duration": _STRING,
        "schedule": _STRING,
        "location": _STRING,
        "cost": _STRING,
        "instructor": _STRING,
        "registration_required": {"type": "boolean"},
    }
    required: ClassVar[tuple[str, ...]] = ("name", "age_groups")


class VenuesSchema(_KnownSchema):
    kind: Literal["venues"] = "venues"

    name: ClassVar[str] = "Venues"
    description: ClassVar[str] = "Places that host family activities"
    examples: ClassVar[tuple[str, ...]] = ("park directories", "indoor play space listings")
    list_key: ClassVar[str] = "venues"
    item_properties: ClassVar[dict[str, dict[str, Any]]] = {
        "name": _STRING,
        "address": _STRING,
        "phone": _STRING,
        "website": _STRING,
        "description": _STRING,
        "facilities": _STRING_LIST,
        "age_suitability": _STRING,
        "admission_fee": _STRING,
    }
    required: ClassVar[tuple[str, ...]] = ("name", "address")


class CustomSchema(BaseModel):
    """Admin-supplied schema; the item list is located heuristically."""

    kind: Literal["custom"] = "custom"
    schema_document: dict[str, Any] = Field(alias="document")

    list_key: ClassVar[Optional[str]] = None

    def document(self) -> dict[str, Any]:
        return self.schema_document


ExtractionSchema = Annotated[
    Union[EventsSchema, ActivitiesSchema, VenuesSchema, CustomSchema],
    Field(discriminator="kind"),
]

_adapter: TypeAdapter[ExtractionSchema] = TypeAdapter(ExtractionSchema)

PREDEFINED: tuple[type[_KnownSchema], ...] = (EventsSchema, ActivitiesSchema, VenuesSchema)
SCHEMA_TYPES: tuple[str, ...] = ("events", "activities", "venues", "custom")


def resolve_schema(
    schema_type: str,
    custom_schema: Optional[dict[str, Any]] = None,
) -> Union[EventsSchema, ActivitiesSchema, VenuesSchema, CustomSchema]:
    """Build the schema variant for *schema_type*.

    Raises:
        ValidationError: For an unknown type, or ``custom`` without a document.
    """
    if schema_type not in SCHEMA_TYPES:
        raise ValidationError(
            f"Invalid schema_type '{schema_type}'. Must be one of: {', '.join(SCHEMA_TYPES)}",
            field="schema_type",
        )
    if schema_type == "custom":
        if not custom_schema:
            raise ValidationError(
                "custom_schema is required when schema_type is 'custom'",
                field="custom_schema",
            )
        return _adapter.validate_python({"kind": "custom", "document": custom_schema})
    return _adapter.validate_python({"kind": schema_type})


def predefined_schemas() -> dict[str, dict[str, Any]]:
    """Descriptions of every predefined schema kind, keyed by type."""
    described = {}
    for cls in PREDEFINED:
        kind = cls.model_fields["kind"].default
        described[kind] = {"type": kind, **cls().describe()}
    return described
