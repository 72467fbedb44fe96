import inspect
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .project_store import ProjectStore

TOOL_TEXT_MAX_CHARS = 20000

ToolResult = Dict[str, Any]
ToolHandler = Callable[[Dict[str, Any]], Union[ToolResult, Awaitable[ToolResult]]]


@dataclass
class ToolSpec:
    name: str
    description: str
    parameters: Dict[str, Any]
    handler: ToolHandler

    def schema(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


def _clip(text: str, limit: int = TOOL_TEXT_MAX_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n... [truncated {len(text) - limit} chars]"


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: Dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec) -> None:
        self._tools[spec.name] = spec

    def names(self) -> List[str]:
        return list(self._tools)

    def schemas(self) -> List[Dict[str, Any]]:
        return [spec.schema() for spec in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    async def execute(self, name: str, args: Dict[str, Any]) -> ToolResult:
        spec = self._tools.get(name)
        if spec is None:
            return {"success": False, "error": f"Unknown tool: {name}"}
        try:
            result = spec.handler(args)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            return {"success": False, "error": str(exc) or exc.__class__.__name__}
        if not isinstance(result, dict):
            return {"success": True, "result": result}
        result.setdefault("success", True)
        return result


def _require_path(args: Dict[str, Any]) -> str:
    path = str(args.get("path") or args.get("file") or "").strip().lstrip("/")
    if not path:
        raise ValueError("Missing path")
    return path


def build_registry(project_store: Optional[ProjectStore], project_id: Optional[str]) -> ToolRegistry:
    registry = ToolRegistry()

    def live_date(args: Dict[str, Any]) -> ToolResult:
        return {"success": True, "now": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")}

    registry.register(
        ToolSpec(
            name="live_date",
            description="Current UTC date and time.",
            parameters={"type": "object", "properties": {}},
            handler=live_date,
        )
    )
    if project_store is None or not project_id:
        return registry

    def list_files(args: Dict[str, Any]) -> ToolResult:
        prefix = str(args.get("prefix") or "").lstrip("/")
        files = [path for path in project_store.list(project_id) if path.startswith(prefix)]
        return {"success": True, "files": files}

    def read_file(args: Dict[str, Any]) -> ToolResult:
        path = _require_path(args)
        content = project_store.get(project_id, path)
        if content is None:
            return {"success": False, "error": f"File not found: {path}"}
        return {"success": True, "path": path, "content": _clip(content)}

    def write_file(args: Dict[str, Any]) -> ToolResult:
        path = _require_path(args)
        content = args.get("content")
        if not isinstance(content, str):
            raise ValueError("content must be a string")
        existed = project_store.get(project_id, path) is not None
        project_store.set(project_id, path, content)
        return {"success": True, "path": path, "created": not existed, "bytes": len(content.encode("utf-8"))}

    def delete_file(args: Dict[str, Any]) -> ToolResult:
        path = _require_path(args)
        if not project_store.delete(project_id, path):
            return {"success": False, "error": f"File not found: {path}"}
        return {"success": True, "path": path}

    path_param = {"type": "string", "description": "File path relative to the project root."}
    registry.register(
        ToolSpec(
            name="list_files",
            description="List the files of the current project.",
            parameters={"type": "object", "properties": {"prefix": {"type": "string"}}},
            handler=list_files,
        )
    )
    registry.register(
        ToolSpec(
            name="read_file",
            description="Read one project file.",
            parameters={"type": "object", "properties": {"path": path_param}, "required": ["path"]},
            handler=read_file,
        )
    )
    registry.register(
        ToolSpec(
            name="write_file",
            description="Create or overwrite a project file with the full new content.",
            parameters={
                "type": "object",
                "properties": {"path": path_param, "content": {"type": "string"}},
                "required": ["path", "content"],
            },
            handler=write_file,
        )
    )
    registry.register(
        ToolSpec(
            name="delete_file",
            description="Delete a project file.",
            parameters={"type": "object", "properties": {"path": path_param}, "required": ["path"]},
            handler=delete_file,
        )
    )
    return registry
