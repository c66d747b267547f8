"""Typed tool parameters.

Every tool has a frozen parameter dataclass tagged with its tool name and a
validator that turns the model's raw argument dict into that dataclass or a
``ParamError``. Validators never raise.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Dict, List, Optional, Tuple, Union


@dataclass(frozen=True)
class ParamError:
    """Validation failure, reported back to the model as a tool error."""
    message: str


class _Invalid(Exception):
    pass


# ── Read tools ──

@dataclass(frozen=True)
class ReadFileParams:
    tool: ClassVar[str] = "read_file"
    path: str
    start_line: Optional[int] = None
    end_line: Optional[int] = None


@dataclass(frozen=True)
class ReadMultipleFilesParams:
    tool: ClassVar[str] = "read_multiple_files"
    paths: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ListDirectoryParams:
    tool: ClassVar[str] = "list_directory"
    path: str


@dataclass(frozen=True)
class GetDirTreeParams:
    tool: ClassVar[str] = "get_dir_tree"
    path: str
    max_depth: int = 3


@dataclass(frozen=True)
class SearchFilesParams:
    tool: ClassVar[str] = "search_files"
    path: str
    pattern: str
    is_regex: bool = False
    file_pattern: Optional[str] = None


@dataclass(frozen=True)
class CodebaseSearchParams:
    tool: ClassVar[str] = "codebase_search"
    query: str
    top_k: int = 10


@dataclass(frozen=True)
class PositionParams:
    """Shared shape of the position-based language-server tools (1-based)."""
    tool: ClassVar[str] = ""
    path: str
    line: int
    column: int


@dataclass(frozen=True)
class FindReferencesParams(PositionParams):
    tool: ClassVar[str] = "find_references"


@dataclass(frozen=True)
class GoToDefinitionParams(PositionParams):
    tool: ClassVar[str] = "go_to_definition"


@dataclass(frozen=True)
class GetHoverInfoParams(PositionParams):
    tool: ClassVar[str] = "get_hover_info"


@dataclass(frozen=True)
class GetDocumentSymbolsParams:
    tool: ClassVar[str] = "get_document_symbols"
    path: str


@dataclass(frozen=True)
class GetLintErrorsParams:
    tool: ClassVar[str] = "get_lint_errors"
    path: str


@dataclass(frozen=True)
class WebSearchParams:
    tool: ClassVar[str] = "web_search"
    query: str
    max_results: int = 5


@dataclass(frozen=True)
class ReadUrlParams:
    tool: ClassVar[str] = "read_url"
    url: str
    timeout: int = 30


# ── Write / dangerous / terminal tools ──

@dataclass(frozen=True)
class EditFileParams:
    tool: ClassVar[str] = "edit_file"
    path: str
    search_replace_blocks: str


@dataclass(frozen=True)
class WriteFileParams:
    tool: ClassVar[str] = "write_file"
    path: str
    content: str


@dataclass(frozen=True)
class CreateFileOrFolderParams:
    tool: ClassVar[str] = "create_file_or_folder"
    path: str
    content: str = ""

    @property
    def is_folder(self) -> bool:
        return self.path.endswith(("/", "\\"))


@dataclass(frozen=True)
class DeleteFileOrFolderParams:
    tool: ClassVar[str] = "delete_file_or_folder"
    path: str
    recursive: bool = False


@dataclass(frozen=True)
class RunCommandParams:
    tool: ClassVar[str] = "run_command"
    command: str
    cwd: Optional[str] = None
    timeout: int = 30


ToolParams = Union[
    ReadFileParams, ReadMultipleFilesParams, ListDirectoryParams, GetDirTreeParams,
    SearchFilesParams, CodebaseSearchParams, FindReferencesParams, GoToDefinitionParams,
    GetHoverInfoParams, GetDocumentSymbolsParams, GetLintErrorsParams, WebSearchParams,
    ReadUrlParams, EditFileParams, WriteFileParams, CreateFileOrFolderParams,
    DeleteFileOrFolderParams, RunCommandParams,
]


# ---------------------------------------------------------------------------
# Field coercion helpers (raise _Invalid, caught in validate_params)
# ---------------------------------------------------------------------------

def _str(args: Dict[str, Any], key: str, required: bool = True,
         default: Optional[str] = None, allow_empty: bool = False) -> Optional[str]:
    value = args.get(key)
    if value is None:
        if required:
            raise _Invalid(f"Missing required parameter: {key}")
        return default
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str):
        raise _Invalid(f"Parameter {key} must be a string")
    if required and not allow_empty and not value.strip():
        raise _Invalid(f"Parameter {key} must not be empty")
    return value


def _int(args: Dict[str, Any], key: str, required: bool = False,
         default: Optional[int] = None, minimum: Optional[int] = None) -> Optional[int]:
    value = args.get(key)
    if value is None:
        if required:
            raise _Invalid(f"Missing required parameter: {key}")
        return default
    if isinstance(value, bool):
        raise _Invalid(f"Parameter {key} must be an integer")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    elif isinstance(value, str) and value.strip().lstrip("-").isdigit():
        value = int(value.strip())
    if not isinstance(value, int):
        raise _Invalid(f"Parameter {key} must be an integer")
    if minimum is not None and value < minimum:
        raise _Invalid(f"Parameter {key} must be >= {minimum}")
    return value


def _bool(args: Dict[str, Any], key: str, default: bool = False) -> bool:
    value = args.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise _Invalid(f"Parameter {key} must be a boolean")


def _str_list(args: Dict[str, Any], key: str) -> Tuple[str, ...]:
    value = args.get(key)
    if value is None:
        raise _Invalid(f"Missing required parameter: {key}")
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list) or not value:
        raise _Invalid(f"Parameter {key} must be a non-empty array")
    if not all(isinstance(v, str) and v.strip() for v in value):
        raise _Invalid(f"Parameter {key} must contain only non-empty strings")
    return tuple(value)


def _position(cls: Callable[..., PositionParams]) -> Callable[[Dict[str, Any]], PositionParams]:
    def validate(a: Dict[str, Any]) -> PositionParams:
        return cls(path=_str(a, "path"),
                   line=_int(a, "line", required=True, minimum=1),
                   column=_int(a, "column", required=True, minimum=1))
    return validate


_VALIDATORS: Dict[str, Callable[[Dict[str, Any]], ToolParams]] = {
    "read_file": lambda a: ReadFileParams(
        path=_str(a, "path"),
        start_line=_int(a, "start_line", minimum=1),
        end_line=_int(a, "end_line", minimum=1),
    ),
    "read_multiple_files": lambda a: ReadMultipleFilesParams(paths=_str_list(a, "paths")),
    "list_directory": lambda a: ListDirectoryParams(path=_str(a, "path")),
    "get_dir_tree": lambda a: GetDirTreeParams(
        path=_str(a, "path"),
        max_depth=min(_int(a, "max_depth", default=3, minimum=1), 5),
    ),
    "search_files": lambda a: SearchFilesParams(
        path=_str(a, "path"),
        pattern=_str(a, "pattern"),
        is_regex=_bool(a, "is_regex"),
        file_pattern=_str(a, "file_pattern", required=False),
    ),
    "codebase_search": lambda a: CodebaseSearchParams(
        query=_str(a, "query"),
        top_k=_int(a, "top_k", default=10, minimum=1),
    ),
    "find_references": _position(FindReferencesParams),
    "go_to_definition": _position(GoToDefinitionParams),
    "get_hover_info": _position(GetHoverInfoParams),
    "get_document_symbols": lambda a: GetDocumentSymbolsParams(path=_str(a, "path")),
    "get_lint_errors": lambda a: GetLintErrorsParams(path=_str(a, "path")),
    "web_search": lambda a: WebSearchParams(
        query=_str(a, "query"),
        max_results=max(1, min(10, _int(a, "max_results", default=5))),
    ),
    "read_url": lambda a: ReadUrlParams(
        url=_str(a, "url"),
        timeout=_int(a, "timeout", default=30, minimum=1),
    ),
    "edit_file": lambda a: EditFileParams(
        path=_str(a, "path"),
        search_replace_blocks=_str(a, "search_replace_blocks"),
    ),
    "write_file": lambda a: WriteFileParams(
        path=_str(a, "path"),
        content=_str(a, "content", allow_empty=True),
    ),
    "create_file_or_folder": lambda a: CreateFileOrFolderParams(
        path=_str(a, "path"),
        content=_str(a, "content", required=False, default=""),
    ),
    "delete_file_or_folder": lambda a: DeleteFileOrFolderParams(
        path=_str(a, "path"),
        recursive=_bool(a, "recursive"),
    ),
    "run_command": lambda a: RunCommandParams(
        command=_str(a, "command"),
        cwd=_str(a, "cwd", required=False),
        timeout=_int(a, "timeout", default=30, minimum=1),
    ),
}


def validate_params(tool_name: str, args: Any) -> Union[ToolParams, ParamError]:
    """Validate raw model arguments for ``tool_name``."""
    validator = _VALIDATORS.get(tool_name)
    if validator is None:
        return ParamError(f"Unknown tool: {tool_name}")
    if not isinstance(args, dict):
        return ParamError(f"Arguments for {tool_name} must be an object")
    if args.get("_parseError"):
        raw = str(args.get("_rawArgs", ""))[:200]
        return ParamError(f"Could not parse tool arguments as JSON: {raw}")
    try:
        return validator(args)
    except _Invalid as e:
        return ParamError(f"Invalid arguments for {tool_name}: {e}")


def known_tools() -> List[str]:
    return list(_VALIDATORS)
