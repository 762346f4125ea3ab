"""
MCP Tool Definitions and Handlers for the memory store
Copyright 2025 Jurden Bruce

All tool responses return JSON for AI consumption, not human-formatted text.
"""

import json
import logging
from datetime import datetime
from typing import Annotated, List, Dict, Any, Optional

from mcp.types import Tool, TextContent
from pydantic import AfterValidator, BaseModel, ConfigDict, Field, ValidationError, ValidationInfo

from .config import (
    MemoryConfig,
    SUBJECT_MAX_LENGTH,
    QUERY_MAX_LENGTH,
    MAX_TAGS,
    MAX_TOP_K,
    MAX_LIST_LIMIT,
    DEFAULT_LIST_LIMIT,
    MAX_IMPORT_ITEMS,
    CONTENT_PROFILES,
)
from .errors import ImportBatchError
from .similarity import MAX_EMBEDDING_SIZE


class DateTimeEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime objects"""
    def default(self, obj):
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)

logger = logging.getLogger("memory-mcp.mcp-tools")


# ===== INPUT MODELS =====

def _check_content_length(value: str, info: ValidationInfo) -> str:
    limit = (info.context or {}).get("content_max_length", CONTENT_PROFILES["standard"])
    if len(value) > limit:
        raise ValueError(f"content exceeds {limit} characters")
    return value


# Upper bound depends on the deployment profile, passed as validation context
ContentText = Annotated[str, Field(min_length=1), AfterValidator(_check_content_length)]


class _ToolInput(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class RememberInput(_ToolInput):
    subject: str = Field(min_length=1, max_length=SUBJECT_MAX_LENGTH)
    content: ContentText
    ttl_days: Optional[float] = Field(default=None, alias="ttlDays", gt=0)
    importance: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    tags: Optional[List[str]] = Field(default=None, max_length=MAX_TAGS)
    embedding: Optional[List[float]] = Field(default=None, min_length=1, max_length=MAX_EMBEDDING_SIZE)


class RecallInput(_ToolInput):
    query: Optional[str] = Field(default=None, max_length=QUERY_MAX_LENGTH)
    k: Optional[int] = Field(default=None, ge=1, le=MAX_TOP_K)
    embedding: Optional[List[float]] = Field(default=None, min_length=1, max_length=MAX_EMBEDDING_SIZE)


class ListInput(_ToolInput):
    limit: int = Field(default=DEFAULT_LIST_LIMIT, ge=1, le=MAX_LIST_LIMIT)


class IdInput(_ToolInput):
    id: str = Field(min_length=1)


class UpdateInput(_ToolInput):
    id: str = Field(min_length=1)
    subject: Optional[str] = Field(default=None, min_length=1, max_length=SUBJECT_MAX_LENGTH)
    content: Optional[ContentText] = None
    ttl_days: Optional[float] = Field(default=None, alias="ttlDays", gt=0)
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")
    importance: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    tags: Optional[List[str]] = Field(default=None, max_length=MAX_TAGS)
    embedding: Optional[List[float]] = Field(default=None, min_length=1, max_length=MAX_EMBEDDING_SIZE)


class ExportInput(_ToolInput):
    pass


class ImportItem(BaseModel):
    # Exported records carry extra keys (id, dateCreated, ...) that are dropped
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    subject: str = Field(min_length=1, max_length=SUBJECT_MAX_LENGTH)
    content: ContentText
    ttl_days: Optional[float] = Field(default=None, alias="ttlDays", gt=0)
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")
    importance: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    tags: Optional[List[str]] = Field(default=None, max_length=MAX_TAGS)
    embedding: Optional[List[float]] = Field(default=None, min_length=1, max_length=MAX_EMBEDDING_SIZE)


class ImportInput(_ToolInput):
    items: List[ImportItem]


def check_import_batch_size(items: Any):
    """Reject oversized batches before validating any item"""
    if isinstance(items, list) and len(items) > MAX_IMPORT_ITEMS:
        raise ImportBatchError(f"Too many items: {len(items)} (max {MAX_IMPORT_ITEMS})")


def _validate(model: type, arguments: Optional[Dict[str, Any]], config: MemoryConfig):
    return model.model_validate(
        arguments or {}, context={"content_max_length": config.content_max_length}
    )


# ===== TOOL DEFINITIONS =====

def _embedding_schema() -> Dict[str, Any]:
    return {
        "type": "array",
        "items": {"type": "number"},
        "minItems": 1,
        "maxItems": MAX_EMBEDDING_SIZE,
        "description": "Precomputed embedding vector (optional; derived from the text when omitted)",
    }


def _tags_schema() -> Dict[str, Any]:
    return {"type": "array", "items": {"type": "string"}, "maxItems": MAX_TAGS, "description": "Tags array"}


def get_tool_definitions(config: Optional[MemoryConfig] = None) -> List[Tool]:
    """Return list of available MCP tools"""
    content_max = (config or MemoryConfig()).content_max_length
    item_properties = {
        "subject": {"type": "string", "minLength": 1, "maxLength": SUBJECT_MAX_LENGTH, "description": "Short title"},
        "content": {"type": "string", "minLength": 1, "maxLength": content_max, "description": "Memory body"},
        "ttlDays": {"type": "number", "exclusiveMinimum": 0, "description": "Days until the memory expires"},
        "importance": {"type": "number", "minimum": 0, "maximum": 1, "description": "Importance (0.0-1.0)", "default": 0.5},
        "tags": _tags_schema(),
        "embedding": _embedding_schema(),
    }
    return [
        Tool(
            name="memory-remember",
            description="Store a new memory. Returns its id and the stored item. Use ttlDays for facts that go stale.",
            inputSchema={
                "type": "object",
                "properties": item_properties,
                "required": ["subject", "content"],
                "additionalProperties": False,
            },
        ),
        Tool(
            name="memory-recall",
            description="Recall the most relevant memories, ranked by text match, semantic similarity, recency and importance. With no query, returns a recency/importance ranked selection.",
            inputSchema={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "maxLength": QUERY_MAX_LENGTH, "description": "Search query"},
                    "k": {"type": "integer", "minimum": 1, "maximum": MAX_TOP_K, "description": "Max results"},
                    "embedding": _embedding_schema(),
                },
                "additionalProperties": False,
            },
        ),
        Tool(
            name="memory-list",
            description="List memories, most recently updated first",
            inputSchema={
                "type": "object",
                "properties": {
                    "limit": {"type": "integer", "minimum": 1, "maximum": MAX_LIST_LIMIT, "default": DEFAULT_LIST_LIMIT},
                },
                "additionalProperties": False,
            },
        ),
        Tool(
            name="memory-get",
            description="Retrieve specific memory by ID",
            inputSchema={
                "type": "object",
                "properties": {"id": {"type": "string", "description": "Memory ID"}},
                "required": ["id"],
                "additionalProperties": False,
            },
        ),
        Tool(
            name="memory-update",
            description="Update fields of an existing memory. Omitted fields are left unchanged; expiresAt null clears the expiry.",
            inputSchema={
                "type": "object",
                "properties": {
                    "id": {"type": "string", "description": "Memory ID to update"},
                    **item_properties,
                    "expiresAt": {"type": ["string", "null"], "format": "date-time", "description": "Absolute expiry (overrides ttlDays)"},
                },
                "required": ["id"],
                "additionalProperties": False,
            },
        ),
        Tool(
            name="memory-forget",
            description="Delete a memory by ID",
            inputSchema={
                "type": "object",
                "properties": {"id": {"type": "string", "description": "Memory ID to delete"}},
                "required": ["id"],
                "additionalProperties": False,
            },
        ),
        Tool(
            name="memory-export",
            description="Export every live memory, oldest first (embeddings are not included)",
            inputSchema={"type": "object", "properties": {}, "additionalProperties": False},
        ),
        Tool(
            name="memory-import",
            description=f"Import up to {MAX_IMPORT_ITEMS} memories atomically: either all are stored or none. Accepts the output of memory-export.",
            inputSchema={
                "type": "object",
                "properties": {
                    "items": {
                        "type": "array",
                        "maxItems": MAX_IMPORT_ITEMS,
                        "items": {
                            "type": "object",
                            "properties": {
                                **item_properties,
                                "expiresAt": {"type": ["string", "null"], "format": "date-time"},
                            },
                            "required": ["subject", "content"],
                        },
                    },
                },
                "required": ["items"],
                "additionalProperties": False,
            },
        ),
    ]


# ===== HANDLERS =====

def _json_response(payload: Any) -> List[TextContent]:
    return [TextContent(type="text", text=json.dumps(payload, indent=2, cls=DateTimeEncoder))]


async def handle_tool_call(
    name: str,
    arguments: Optional[Dict[str, Any]],
    memory_store,
    config: Optional[MemoryConfig] = None,
) -> List[TextContent]:
    """
    Handle MCP tool calls with JSON responses

    Args:
        name: Tool name
        arguments: Tool arguments
        memory_store: MemoryStore instance
        config: Active configuration (limits and default k)

    Returns:
        List of TextContent with JSON-encoded responses
    """
    config = config or memory_store.config
    try:
        if name == "memory-remember":
            args = _validate(RememberInput, arguments, config)
            await memory_store.cleanup_expired()
            memory_id = await memory_store.insert(
                args.subject,
                args.content,
                ttl_days=args.ttl_days,
                embedding=args.embedding,
                importance=args.importance,
                tags=args.tags,
            )
            saved = await memory_store.get(memory_id)
            return _json_response({"id": memory_id, "item": saved.to_api_dict() if saved else None})

        elif name == "memory-recall":
            args = _validate(RecallInput, arguments, config)
            await memory_store.cleanup_expired()
            k = args.k or config.default_top_k
            ranked = await memory_store.recall(args.query, k, args.embedding)
            results = [
                {**scored.record.to_api_dict(), "score": round(scored.score, 4)}
                for scored in ranked
            ]
            return _json_response({"query": args.query, "k": k, "count": len(results), "results": results})

        elif name == "memory-list":
            args = _validate(ListInput, arguments, config)
            await memory_store.cleanup_expired()
            records = await memory_store.list(args.limit)
            return _json_response({
                "count": len(records),
                "fts": memory_store.fts_available,
                "items": [r.to_api_dict() for r in records],
            })

        elif name == "memory-get":
            args = _validate(IdInput, arguments, config)
            record = await memory_store.get(args.id)
            return _json_response({"id": args.id, "item": record.to_api_dict() if record else None})

        elif name == "memory-update":
            args = _validate(UpdateInput, arguments, config)
            patch = args.model_dump(exclude_unset=True, exclude={"id"})
            updated = await memory_store.update(args.id, patch)
            record = await memory_store.get(args.id) if updated else None
            return _json_response({
                "id": args.id,
                "updated": updated,
                "item": record.to_api_dict() if record else None,
            })

        elif name == "memory-forget":
            args = _validate(IdInput, arguments, config)
            deleted = await memory_store.delete(args.id)
            return _json_response({"id": args.id, "deleted": deleted})

        elif name == "memory-export":
            _validate(ExportInput, arguments, config)
            await memory_store.cleanup_expired()
            records = await memory_store.export_all()
            return _json_response({"count": len(records), "items": [r.to_api_dict() for r in records]})

        elif name == "memory-import":
            check_import_batch_size((arguments or {}).get("items"))
            args = _validate(ImportInput, arguments, config)
            ids = await memory_store.import_all([item.model_dump() for item in args.items])
            return _json_response({"imported": len(ids), "ids": ids})

        else:
            return _json_response({"error": f"Unknown tool: {name}", "tool": name, "type": "UnknownTool"})

    except ValidationError as e:
        logger.warning(f"Invalid arguments for {name}: {e}")
        return _error_response(name, e)
    except Exception as e:
        logger.error(f"Tool execution error: {name}: {e}", exc_info=True)
        return _error_response(name, e)


def _error_response(name: str, error: Exception) -> List[TextContent]:
    return _json_response({
        "error": str(error),
        "tool": name,
        "type": type(error).__name__,
    })
