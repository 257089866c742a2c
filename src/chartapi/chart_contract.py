from __future__ import annotations

import re
import secrets
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

CHART_SCHEMA_VERSION = "v1"
DOCUMENT_ID_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTWXYZabcdefghijkmnopqrstuvwxyz"
DOCUMENT_ID_LENGTH = 17
DOCUMENT_ID_PATTERN = re.compile(rf"^[{DOCUMENT_ID_ALPHABET}]{{{DOCUMENT_ID_LENGTH}}}$")
VERSION_PATTERN = re.compile(r"^\d+(\.\d+)+$")
NODE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,63}$")

MAX_NODES = 2_000
MAX_LINKS = 10_000
MAX_REFERENCES_PER_NODE = 200


class ErrorBody(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class ErrorResponse(BaseModel):
    error: ErrorBody


class CommentV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    commentId: str | None = None
    owner: str | None = None
    text: str = Field(default="", max_length=20_000)
    attachment: str | None = None
    createdAt: datetime | None = None


class GraphNodeV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    nodeId: str
    name: str = Field(default="", max_length=200)
    details: str = Field(default="", max_length=50_000)
    images: list[str] = Field(default_factory=list, max_length=MAX_REFERENCES_PER_NODE)
    resources: list[str] = Field(default_factory=list, max_length=MAX_REFERENCES_PER_NODE)
    comments: list[CommentV1] = Field(default_factory=list)

    @field_validator("nodeId")
    @classmethod
    def validate_node_id(cls, value: str) -> str:
        node_id = str(value).strip()
        if not NODE_ID_PATTERN.fullmatch(node_id):
            raise ValueError("nodeId must match ^[A-Za-z0-9][A-Za-z0-9_.:-]{0,63}$")
        return node_id


class GraphLinkV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    source: str = Field(min_length=1)
    target: str = Field(min_length=1)


class GraphDocumentV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    schemaVersion: Literal["v1"] = CHART_SCHEMA_VERSION
    graphId: str | None = None
    owner: str | None = None
    nodes: list[GraphNodeV1] = Field(default_factory=list, max_length=MAX_NODES)
    links: list[GraphLinkV1] = Field(default_factory=list, max_length=MAX_LINKS)


class HistoryEntryV1(BaseModel):
    """One superseded (version, graph) pair. Entries are never edited after append."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    version: str
    graphId: str
    comments: str | None = None
    userId: str
    date: datetime


class ChartEditableFieldsV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=120)
    description: str = Field(default="", max_length=5_000)
    image: str | None = None
    editors: list[str] = Field(default_factory=list)
    inCatalog: bool = False

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        text = str(value).strip()
        if not text:
            raise ValueError("name must not be empty.")
        return text

    @field_validator("image")
    @classmethod
    def validate_image(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return normalize_resource_ref(value)

    @field_validator("editors")
    @classmethod
    def validate_editors(cls, values: list[str]) -> list[str]:
        seen: set[str] = set()
        editors: list[str] = []
        for raw in values:
            item = str(raw).strip()
            if not item:
                raise ValueError("editor identities must not be empty.")
            if item in seen:
                continue
            seen.add(item)
            editors.append(item)
        return editors


class ChartV1(ChartEditableFieldsV1):
    model_config = ConfigDict(extra="forbid")

    schemaVersion: Literal["v1"] = CHART_SCHEMA_VERSION
    chartId: str
    owner: str = Field(min_length=1)
    graphId: str
    editingGraphId: str | None = None
    version: str
    history: list[HistoryEntryV1] = Field(default_factory=list)
    downloads: int = Field(default=0, ge=0)
    upvotedIds: list[str] = Field(default_factory=list)
    downvotedIds: list[str] = Field(default_factory=list)
    comments: list[CommentV1] = Field(default_factory=list)

    @field_validator("version")
    @classmethod
    def validate_version(cls, value: str) -> str:
        if not VERSION_PATTERN.fullmatch(value):
            raise ValueError("version must be dotted numeric, e.g. 1.0 or 2.3.1")
        return value


class ChartCreateRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=120)
    description: str = Field(default="", max_length=5_000)

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        text = str(value).strip()
        if not text:
            raise ValueError("name must not be empty.")
        return text


class ChartUpsertRequestV1(ChartEditableFieldsV1):
    model_config = ConfigDict(extra="forbid")

    chartId: str | None = None


class PublishRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    comments: str = Field(max_length=20_000)
    version: str | None = None


class GraphChangeRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    graphId: str
    version: str
    comments: str | None = Field(default=None, max_length=20_000)


class FeedbackRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    userId: str = Field(min_length=1)
    feedback: bool
    clear: bool = False


class NodeEditRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(default="", max_length=200)
    details: str = Field(default="", max_length=50_000)
    images: list[str] = Field(default_factory=list, max_length=MAX_REFERENCES_PER_NODE)
    resources: list[str] = Field(default_factory=list, max_length=MAX_REFERENCES_PER_NODE)

    @field_validator("images", "resources")
    @classmethod
    def validate_references(cls, values: list[str]) -> list[str]:
        return normalize_resource_refs(values)


class ChartCreatedResponseV1(BaseModel):
    chartId: str


class ChartListResponseV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    charts: list[ChartV1]


class PermissionsResponseV1(BaseModel):
    chartId: str
    canEdit: bool
    isOwner: bool


class EditingGraphResponseV1(BaseModel):
    chartId: str
    graphId: str
    graph: GraphDocumentV1


class UpdateResultV1(BaseModel):
    updated: int = Field(ge=0)


class UpsertResultV1(BaseModel):
    numberAffected: int = Field(ge=0)
    insertedId: str | None = None


class ResourceListResponseV1(BaseModel):
    chartId: str
    resources: list[str]


class UserListResponseV1(BaseModel):
    chartId: str
    userIds: list[str]


class FeedbackResultV1(BaseModel):
    ok: bool


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_document_id() -> str:
    return "".join(secrets.choice(DOCUMENT_ID_ALPHABET) for _ in range(DOCUMENT_ID_LENGTH))


def normalize_resource_ref(value: str) -> str | None:
    """Trim a resource reference and drop one trailing slash; empty input yields None."""
    text = str(value).strip()
    if text.endswith("/"):
        text = text[:-1]
    return text or None


def normalize_resource_refs(values: list[str]) -> list[str]:
    seen: set[str] = set()
    refs: list[str] = []
    for raw in values:
        ref = normalize_resource_ref(raw)
        if ref is None or ref in seen:
            continue
        seen.add(ref)
        refs.append(ref)
    return refs


def unique_present(values: list[Any]) -> list[Any]:
    """De-duplicate keeping first occurrence and drop None entries."""
    seen: set[Any] = set()
    result: list[Any] = []
    for value in values:
        if value is None or value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result
