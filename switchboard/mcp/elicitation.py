"""
Elicitation — server-initiated requests for user input.

Two modes: "form" carries a flat JSON schema the user fills in, "url" asks
the user to visit a link (typically a third-party authorization page).
Forms are parsed into fields and validated locally before the answer goes
back to the server.
"""

from __future__ import annotations

import math
import re
import time
from dataclasses import dataclass, field
from enum import Enum

import httpx

_EMAIL_RE = re.compile(r"^[\w\-\.]+@([\w-]+\.)+[\w-]{2,4}$")


class ElicitationAction(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"
    CANCEL = "cancel"

    @classmethod
    def parse(cls, value: str) -> ElicitationAction:
        try:
            return cls(value)
        except ValueError:
            return cls.CANCEL


class ElicitationMode(str, Enum):
    FORM = "form"
    URL = "url"

    @classmethod
    def parse(cls, value: str | None) -> ElicitationMode:
        try:
            return cls(value or "form")
        except ValueError:
            return cls.FORM


@dataclass
class ElicitationRequest:
    id: str
    mode: ElicitationMode
    message: str
    elicitation_id: str | None = None
    url: str | None = None
    requested_schema: dict | None = None

    @classmethod
    def from_params(cls, id_, params: dict) -> ElicitationRequest:
        return cls(
            id=str(id_),
            mode=ElicitationMode.parse(params.get("mode")),
            message=params.get("message", ""),
            elicitation_id=params.get("elicitationId"),
            url=params.get("url"),
            requested_schema=params.get("requestedSchema"),
        )

    def form(self) -> ElicitationForm:
        return ElicitationForm.from_schema(self.requested_schema or {})


@dataclass
class ElicitationResponse:
    action: ElicitationAction
    content: dict | None = None

    @classmethod
    def accept(cls, content: dict | None = None) -> ElicitationResponse:
        return cls(ElicitationAction.ACCEPT, content)

    @classmethod
    def decline(cls) -> ElicitationResponse:
        return cls(ElicitationAction.DECLINE)

    @classmethod
    def cancel(cls) -> ElicitationResponse:
        return cls(ElicitationAction.CANCEL)

    def to_result(self) -> dict:
        result: dict = {"action": self.action.value}
        if self.content:
            result["content"] = self.content
        return result


def parse_url_elicitations(error: dict) -> list[ElicitationRequest]:
    """Pull the URL elicitations out of a -32042 error object."""
    data = error.get("data")
    if not isinstance(data, dict):
        return []
    items = data.get("elicitations") or []
    stamp = int(time.time() * 1000)
    return [
        ElicitationRequest.from_params(f"error-{stamp}-{i}", item)
        for i, item in enumerate(items)
        if isinstance(item, dict)
    ]


# ---------------------------------------------------------------------------
# Forms
# ---------------------------------------------------------------------------

class FormFieldType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    SINGLE_SELECT = "single_select"
    MULTI_SELECT = "multi_select"

    @classmethod
    def from_schema(cls, schema: dict) -> FormFieldType:
        type_ = schema.get("type")
        if type_ == "boolean":
            return cls.BOOLEAN
        if type_ == "number":
            return cls.NUMBER
        if type_ == "integer":
            return cls.INTEGER
        if type_ == "array":
            return cls.MULTI_SELECT
        if "enum" in schema or "oneOf" in schema:
            return cls.SINGLE_SELECT
        return cls.TEXT


def _options(entries: list) -> tuple[list[str], dict[str, str]]:
    values: list[str] = []
    titles: dict[str, str] = {}
    for option in entries:
        value = str(option.get("const"))
        values.append(value)
        if "title" in option:
            titles[value] = option["title"]
    return values, titles


def _fmt(n) -> str:
    return str(int(n)) if isinstance(n, float) and n.is_integer() else str(n)


@dataclass
class FormField:
    name: str
    type: FormFieldType
    schema: dict = field(default_factory=dict)
    title: str | None = None
    description: str | None = None
    required: bool = False
    default: object = None
    min_length: int | None = None
    max_length: int | None = None
    pattern: str | None = None
    format: str | None = None
    minimum: float | None = None
    maximum: float | None = None
    enum_values: list[str] | None = None
    enum_titles: dict[str, str] | None = None
    min_items: int | None = None
    max_items: int | None = None

    @classmethod
    def from_schema(cls, name: str, schema: dict, required: bool = False) -> FormField:
        type_ = FormFieldType.from_schema(schema)
        enum_values = None
        enum_titles = None

        if "enum" in schema:
            enum_values = [str(v) for v in schema["enum"]]
        elif "oneOf" in schema:
            enum_values, enum_titles = _options(schema["oneOf"])
        elif type_ is FormFieldType.MULTI_SELECT:
            items = schema.get("items") or {}
            if "enum" in items:
                enum_values = [str(v) for v in items["enum"]]
            elif "anyOf" in items:
                enum_values, enum_titles = _options(items["anyOf"])

        return cls(
            name=name,
            type=type_,
            schema=schema,
            title=schema.get("title"),
            description=schema.get("description"),
            required=required,
            default=schema.get("default"),
            min_length=schema.get("minLength"),
            max_length=schema.get("maxLength"),
            pattern=schema.get("pattern"),
            format=schema.get("format"),
            minimum=schema.get("minimum"),
            maximum=schema.get("maximum"),
            enum_values=enum_values,
            enum_titles=enum_titles,
            min_items=schema.get("minItems"),
            max_items=schema.get("maxItems"),
        )

    @property
    def label(self) -> str:
        return self.title or self.name

    def validate(self, value) -> str | None:
        """Return an error message, or None when the value is acceptable."""
        empty = value is None or value == ""
        if self.required and empty:
            return "This field is required"
        if empty:
            return None

        if self.type is FormFieldType.TEXT:
            if not isinstance(value, str):
                return "Must be a string"
            if self.min_length is not None and len(value) < self.min_length:
                return f"Minimum length is {self.min_length}"
            if self.max_length is not None and len(value) > self.max_length:
                return f"Maximum length is {self.max_length}"
            if self.pattern and not re.search(self.pattern, value):
                return "Does not match required pattern"
            if self.format == "email" and not _EMAIL_RE.match(value):
                return "Must be a valid email address"
            if self.format == "uri":
                try:
                    httpx.URL(value)
                except httpx.InvalidURL:
                    return "Must be a valid URI"

        elif self.type in (FormFieldType.NUMBER, FormFieldType.INTEGER):
            try:
                number = float(str(value))
            except ValueError:
                number = None
            if number is None or isinstance(value, bool) or not math.isfinite(number):
                return f"Must be a {self.type.value}"
            if self.type is FormFieldType.INTEGER and number != int(number):
                return "Must be an integer"
            if self.minimum is not None and number < self.minimum:
                return f"Minimum value is {_fmt(self.minimum)}"
            if self.maximum is not None and number > self.maximum:
                return f"Maximum value is {_fmt(self.maximum)}"

        elif self.type is FormFieldType.BOOLEAN:
            if not isinstance(value, bool):
                return "Must be true or false"

        elif self.type is FormFieldType.SINGLE_SELECT:
            if self.enum_values is not None and str(value) not in self.enum_values:
                return f"Must be one of: {', '.join(self.enum_values)}"

        elif self.type is FormFieldType.MULTI_SELECT:
            if not isinstance(value, list):
                return "Must be a list"
            if self.min_items is not None and len(value) < self.min_items:
                return f"Must select at least {self.min_items} items"
            if self.max_items is not None and len(value) > self.max_items:
                return f"Must select at most {self.max_items} items"
            if self.enum_values is not None:
                for item in value:
                    if str(item) not in self.enum_values:
                        return f"Invalid option: {item}"

        return None

    def coerce(self, raw: str):
        """Turn user-typed text into the value type the schema expects."""
        raw = raw.strip()
        if raw == "":
            return None
        if self.type is FormFieldType.BOOLEAN:
            lowered = raw.lower()
            if lowered in ("y", "yes", "true", "1"):
                return True
            if lowered in ("n", "no", "false", "0"):
                return False
            return raw
        if self.type is FormFieldType.INTEGER:
            try:
                return int(raw)
            except ValueError:
                return raw
        if self.type is FormFieldType.NUMBER:
            try:
                return float(raw)
            except ValueError:
                return raw
        if self.type is FormFieldType.MULTI_SELECT:
            return [part.strip() for part in raw.split(",") if part.strip()]
        return raw


@dataclass
class ElicitationForm:
    fields: list[FormField] = field(default_factory=list)

    @classmethod
    def from_schema(cls, schema: dict) -> ElicitationForm:
        properties = schema.get("properties") or {}
        required = set(schema.get("required") or [])
        return cls(fields=[
            FormField.from_schema(name, field_schema, name in required)
            for name, field_schema in properties.items()
        ])

    def validate_all(self, values: dict) -> dict[str, str]:
        errors = {}
        for f in self.fields:
            error = f.validate(values.get(f.name))
            if error is not None:
                errors[f.name] = error
        return errors

    def defaults(self) -> dict:
        return {f.name: f.default for f in self.fields if f.default is not None}
