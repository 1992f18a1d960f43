"""Prompt templates shipped with the package.

Templates live in ``quill/instructions/*.md`` and are read through
``importlib.resources`` so they resolve the same way from a checkout or an
installed wheel. Placeholders use ``str.format`` syntax; a placeholder with
no value is left in the text as-is.
"""

from importlib.resources import files
from importlib.resources.abc import Traversable
from pathlib import Path

TEMPLATE_PACKAGE = "quill"
TEMPLATE_FOLDER = "instructions"


class _SafeFormatDict(dict[str, str]):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def packaged_templates() -> Traversable:
    return files(TEMPLATE_PACKAGE) / TEMPLATE_FOLDER


class InstructionLoader:
    """Cached access to prompt templates.

    ``root`` replaces the packaged folder; tests point it at a temp dir.
    """

    def __init__(self, root: Path | str | None = None):
        self.root: Traversable = Path(root) if root is not None else packaged_templates()
        self._templates: dict[str, str] = {}

    def load(self, name: str) -> str:
        if name not in self._templates:
            source = self.root / name
            if not source.is_file():
                raise FileNotFoundError(f"Unknown prompt template: {name}")
            self._templates[name] = source.read_text(encoding="utf-8").strip()
        return self._templates[name]

    def render(self, name: str, **values: object) -> str:
        """Fill ``name`` with ``values``; missing keys stay as ``{key}``."""
        mapping = _SafeFormatDict({key: str(value) for key, value in values.items()})
        return self.load(name).format_map(mapping)
