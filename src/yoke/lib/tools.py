"""Typed tool definitions.

A tool is an async handler taking a validated pydantic input model and an
execution context, declared with the ``yoke_tool`` decorator. The decorator
infers the input model from the handler's first parameter, derives the JSON
Schema the backend sees, and records which input fields are filesystem
paths so dispatch can sandbox them before the handler ever runs.

Handlers return a ``BaseModel`` (serialized to JSON) or a ``str`` (passed
through). Raise ``ToolError`` to fail the call with a message the model
will see.

Examples:
    Define a read-only tool::

        >>> class ReadInput(BaseModel):
        ...     path: str = Field(description="File to read")
        >>> @yoke_tool("Read a file.", category=ToolCategory.READ, path_fields=("path",))
        ... async def Read(params: ReadInput, ctx: ToolContext) -> str:
        ...     return ctx.sandbox.resolve(params.path).read_text()
        >>> Read.name, Read.category
        ('Read', <ToolCategory.READ: 'read'>)

    Invoke it with raw arguments::

        >>> params = Read.parse({"path": "README.md"})
        >>> await Read.run(params, ctx)
        '# Project\\n...'
"""

import inspect
import logging
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any, get_type_hints

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from yoke.lib.errors import InvalidInputError
from yoke.lib.responses import tool_success

logger = logging.getLogger(__name__)


class ToolCategory(StrEnum):
    """Risk class a permission mode assigns its default to."""

    READ = "read"
    MUTATE = "mutate"
    SHELL = "shell"


type ToolHandler = Callable[[Any, Any], Awaitable[BaseModel | str]]


class YokeTool(BaseModel):
    """A tool with a typed input model and its dispatch metadata."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    description: str
    category: ToolCategory
    input_model: type[BaseModel]
    handler: ToolHandler
    path_fields: tuple[str, ...] = Field(
        default=(), description="Input fields holding filesystem paths"
    )

    @property
    def parameters(self) -> dict[str, Any]:
        """JSON Schema for the tool input."""
        return self.input_model.model_json_schema()

    def parse(self, arguments: dict[str, Any]) -> BaseModel:
        """Validate raw arguments.

        Raises:
            InvalidInputError: If the arguments don't match the input model.
        """
        try:
            return self.input_model.model_validate(arguments)
        except ValidationError as e:
            raise InvalidInputError(f"Invalid input for {self.name}: {e}") from e

    def path_arguments(self, params: BaseModel) -> list[str]:
        """Values of the path fields that were actually supplied."""
        paths: list[str] = []
        for field in self.path_fields:
            match getattr(params, field, None):
                case str() as value if value:
                    paths.append(value)
                case list() as values:
                    paths.extend(v for v in values if isinstance(v, str) and v)
        return paths

    async def run(self, params: BaseModel, ctx: Any) -> str:
        """Execute the handler on already-validated params."""
        result = await self.handler(params, ctx)
        match result:
            case BaseModel():
                return tool_success(result.model_dump(mode="json"))
            case str():
                return result
            case _:
                raise TypeError(
                    f"yoke_tool '{self.name}': handler must return a BaseModel or str, "
                    f"got {type(result).__name__}"
                )


def yoke_tool(
    description: str,
    *,
    category: ToolCategory,
    name: str | None = None,
    input_model: type[BaseModel] | None = None,
    path_fields: tuple[str, ...] = (),
) -> Callable[[ToolHandler], YokeTool]:
    """Decorator turning an async handler into a ``YokeTool``.

    Args:
        description: What/when/why; the model's only documentation for this tool.
        category: Risk category used for the permission mode default.
        name: Tool name as the model sees it. Defaults to the function name.
        input_model: Input BaseModel. Inferred from the handler's first
            parameter annotation if omitted.
        path_fields: Input fields that are filesystem paths.

    Returns:
        A decorator producing a ``YokeTool``.
    """

    def decorator(handler: ToolHandler) -> YokeTool:
        tool_name = name or handler.__name__
        resolved = input_model
        if resolved is None:
            params = list(inspect.signature(handler).parameters.values())
            if not params:
                raise TypeError(f"yoke_tool '{tool_name}': handler has no parameters")
            hint = get_type_hints(handler).get(params[0].name)
            if isinstance(hint, type) and issubclass(hint, BaseModel):
                resolved = hint
        if resolved is None:
            raise TypeError(f"yoke_tool '{tool_name}': cannot infer input_model from annotations")

        unknown = set(path_fields) - set(resolved.model_fields)
        if unknown:
            raise TypeError(f"yoke_tool '{tool_name}': unknown path fields {sorted(unknown)}")

        return YokeTool(
            name=tool_name,
            description=description,
            category=category,
            input_model=resolved,
            handler=handler,
            path_fields=path_fields,
        )

    return decorator
