import sys
import textwrap
from collections.abc import Callable
from pathlib import Path

import pytest

GENERATOR_DIR = Path(__file__).resolve().parent.parent
for entry in (GENERATOR_DIR, GENERATOR_DIR / "examples"):
    if str(entry) not in sys.path:
        sys.path.insert(0, str(entry))

import simplegen  # noqa: E402

NAMES_TEMPLATE = """
{% for spec in specs %}
{{ spec.name | upper }} = {{ spec.name | tags_literal }}
{% endfor %}
"""


def names_generator(
    sg: simplegen.SimpleGenerator,
    package: simplegen.Package,
    declaration: simplegen.Declaration,
    annotation: simplegen.Annotation,
) -> tuple[dict[str, str], list[str]]:
    return {"name": declaration.name}, annotation.argv


@pytest.fixture
def write_tree(tmp_path: Path) -> Callable[[dict[str, str]], Path]:
    """Write {relative path: source} under tmp_path/src and return that root."""

    def _write_tree(files: dict[str, str]) -> Path:
        root = tmp_path / "src"
        for relative, source in files.items():
            path = root / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(textwrap.dedent(source).lstrip("\n"), encoding="utf-8")
        root.mkdir(exist_ok=True)
        return root

    return _write_tree


@pytest.fixture
def names_directive() -> simplegen.TemplateGenerator:
    return simplegen.TemplateGenerator(template=NAMES_TEMPLATE, generator=names_generator)


@pytest.fixture
def load_struct() -> Callable[..., tuple[simplegen.DeclarationIndex, simplegen.StructuralType]]:
    def _load_struct(
        root: Path, package_path: str, name: str
    ) -> tuple[simplegen.DeclarationIndex, simplegen.StructuralType]:
        index = simplegen.DeclarationIndex(root)
        package = index.get_package(package_path)
        return index, index.get_structural_type(package, name)

    return _load_struct
