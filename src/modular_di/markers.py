from __future__ import annotations

from typing import Annotated, Any, NamedTuple, get_args, get_origin

_ANNOTATED_MARKER_MIN_ARGS = 2


class Named(NamedTuple):
    """Select a keyed binding for a factory parameter.

    Attach ``Named`` metadata to ``typing.Annotated`` so the injector resolves
    the parameter with ``get(dependency, key=...)``.

    Examples:
        .. code-block:: python

            class Repository:
                def __init__(self, client: Annotated[HttpClient, Named("cached")]) -> None:
                    self.client = client

    """

    key: str


def split_named_annotation(annotation: Any) -> tuple[Any, str | None]:
    """Return the bare dependency type and the ``Named`` key of an annotation."""
    if get_origin(annotation) is not Annotated:
        return annotation, None

    args = get_args(annotation)
    if len(args) < _ANNOTATED_MARKER_MIN_ARGS:
        return annotation, None  # pragma: no cover - Annotated requires at least 2 args

    for metadata in args[1:]:
        if isinstance(metadata, Named):
            return args[0], metadata.key
    return args[0], None
