"""Example directives for simplegen.

- ``paginator``: a pagination container per annotated model.
- ``settable-input``: a Settable mirror of a model that records which input
  fields were explicitly provided.
- ``sort-by-keys``: functions that reorder loaded records to match a list of
  keys.

Usage:
    simplegen --root examples --package my_project.models \\
        --package my_project.responses \\
        --generators codegen:GENERATORS --template-functions codegen:TEMPLATE_FUNCTIONS
"""

import argparse
import re
from collections.abc import Iterator
from dataclasses import dataclass

from simplegen import (
    Annotation,
    Declaration,
    FieldDescriptor,
    MapType,
    NamedType,
    Package,
    PointerType,
    SequenceType,
    SimpleGenerator,
    TemplateGenerator,
    TypeShape,
    UnionType,
)


def to_snake_case(name: str) -> str:
    return re.sub(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])", "_", name).lower()


def _local_import(package: Package, module_name: str, name: str) -> str:
    """Import identifier for ``name`` seen from a generated file in ``package``."""
    if module_name == package.path:
        return f".{name}"
    return f".{module_name.removeprefix(package.path + '.')}.{name}"


def _declaration_import(package: Package, declaration: Declaration) -> str:
    return _local_import(package, declaration.module.name, declaration.name)


def _iter_named(shape: TypeShape) -> Iterator[NamedType]:
    if isinstance(shape, NamedType):
        yield shape
    elif isinstance(shape, (PointerType, SequenceType)):
        yield from _iter_named(shape.elem)
    elif isinstance(shape, MapType):
        yield from _iter_named(shape.key)
        yield from _iter_named(shape.value)
    elif isinstance(shape, UnionType):
        for option in shape.options:
            yield from _iter_named(option)


# ===--- paginator ---=== #

PAGINATOR_TEMPLATE = '''
{% for spec in specs %}


@dataclass
class {{ spec.name }}ListPaginated:
    """{{ spec.name }} list in a pagination container."""

    current_cursor: Optional[str] = None
    next_cursor: Optional[str] = None
    results: list[{{ spec.name }}] = field(default_factory=list)
    is_paginated: bool = field(default=True, repr=False)
    limit: int = field(default=0, repr=False)
    offset: int = field(default=0, repr=False)

    @classmethod
    def from_options(cls, options: {{ spec.options }}) -> "{{ spec.name }}ListPaginated":
        """Build an empty page from pagination options.

        Raises:
            ValueError: The cursor is not an integer offset.
        """
        offset = int(options.cursor) if options.cursor is not None else 0
        return cls(
            current_cursor=options.cursor,
            is_paginated=options.is_paginated(),
            limit=options.limit,
            offset=offset,
        )
{% endfor %}
'''

PAGINATE_OPTIONS = "PaginateOptions"


@dataclass(frozen=True)
class PaginatorSpec:
    name: str
    options: str


def paginator(
    sg: SimpleGenerator,
    package: Package,
    declaration: Declaration,
    annotation: Annotation,
) -> tuple[PaginatorSpec, list[str]]:
    options = sg.get_structural_type(package, PAGINATE_OPTIONS)
    imports = [
        "dataclasses.dataclass",
        "dataclasses.field",
        "typing.Optional",
        _declaration_import(package, declaration),
        _local_import(package, options.module.name, options.name),
    ]
    return PaginatorSpec(name=declaration.name, options=options.name), imports


# ===--- settable-input ---=== #

SETTABLE_TEMPLATE = '''
T = TypeVar("T")


@dataclass(frozen=True)
class Settable(Generic[T]):
    """A value that remembers whether it was explicitly set."""

    value: Optional[T] = None
    is_set: bool = False

    @classmethod
    def of(cls, value: T) -> "Settable[T]":
        return cls(value=value, is_set=True)
{% for spec in specs %}


@dataclass
class {{ spec.name }}Settable:
    """{{ spec.name }} with Settable fields."""

{% for f in spec.fields %}
    {{ f.name }}: {{ format_settable_tags(f.type_name, f.tags) }} = field(default_factory=Settable)
{% endfor %}

    @classmethod
    def from_input(cls, inp: {{ spec.name }}, input_fields: Mapping[str, Any]) -> "{{ spec.name }}Settable":
        settable = cls()
{% for f in spec.fields %}
        if {{ f.key | tags_literal }} in input_fields:
            settable.{{ f.name }} = Settable.of(inp.{{ f.name }})
{% endfor %}
        return settable
{% endfor %}
'''


@dataclass(frozen=True)
class SettableSpec:
    name: str
    fields: tuple[FieldDescriptor, ...]


def format_settable_tags(type_name: str, tags: str) -> str:
    """Render the Settable annotation for a field, keeping its tags.

    >>> format_settable_tags("int", 'json:"id"')
    'Annotated[Settable[int], \\'json:"id"\\']'
    """
    if not tags:
        return f"Settable[{type_name}]"
    return f"Annotated[Settable[{type_name}], {tags!r}]"


def settable_input(
    sg: SimpleGenerator,
    package: Package,
    declaration: Declaration,
    annotation: Annotation,
) -> tuple[SettableSpec, list[str]]:
    struct = sg.get_structural_type(package, declaration.name)
    fields, imports = sg.resolve_fields(struct, package)

    local_imports = [_declaration_import(package, declaration)]
    for descriptor in fields:
        for named in _iter_named(descriptor.shape):
            if not named.qualifier:
                local_imports.append(_local_import(package, named.module, named.name))

    imports = [
        "collections.abc.Mapping",
        "dataclasses.dataclass",
        "dataclasses.field",
        "typing.Annotated",
        "typing.Any",
        "typing.Generic",
        "typing.Optional",
        "typing.TypeVar",
        "typing.Union",
        *imports,
        *local_imports,
    ]
    return SettableSpec(name=declaration.name, fields=tuple(fields)), imports


# ===--- sort-by-keys ---=== #

SORTER_TEMPLATE = '''
{% for spec in specs %}


def {{ spec.function_name }}(
    values: Sequence[{{ spec.type_name }}], keys: Sequence[{{ spec.field_type }}]
) -> list[{{ spec.result_type }}]:
    """Return {{ spec.type_name }} records in the order of ``keys``."""
    result = []
    for key in keys:
{% if spec.many %}
        result.append([value for value in values if value.{{ spec.field_name }} == key])
{% else %}
        found = None
        for value in values:
            if value.{{ spec.field_name }} == key:
                found = value
                break
        result.append(found)
{% endif %}
    return result
{% endfor %}
'''

_LIST_TYPE_RE = re.compile(r"^list\[(?P<inner>[\w.]+)\]$")
_DOTTED_TYPE_RE = re.compile(r"^[A-Za-z_][\w.]*$")


class SorterArgumentParser(argparse.ArgumentParser):
    def error(self, message: str):
        raise ValueError(f"sort-by-keys: {message}")


def build_sorter_parser() -> SorterArgumentParser:
    parser = SorterArgumentParser(prog="sort-by-keys", add_help=False, allow_abbrev=False)
    parser.add_argument(
        "-type",
        dest="type_ref",
        required=True,
        help="Record type, my_project.models.User or list[my_project.models.User]",
    )
    parser.add_argument("-suffix", default="", help="Suffix for the generated function")
    parser.add_argument(
        "-fieldName", dest="field_name", default="id", help="Field used as the key"
    )
    parser.add_argument(
        "-fieldType", dest="field_type", default=None, help="Key type (default: field type)"
    )
    return parser


@dataclass(frozen=True)
class SorterSpec:
    function_name: str
    type_name: str
    field_name: str
    field_type: str
    many: bool

    @property
    def result_type(self) -> str:
        if self.many:
            return f"list[{self.type_name}]"
        return f"Optional[{self.type_name}]"


def sorter(
    sg: SimpleGenerator,
    package: Package,
    declaration: Declaration,
    annotation: Annotation,
) -> tuple[SorterSpec, list[str]]:
    args = build_sorter_parser().parse_args(annotation.argv)

    type_ref = args.type_ref
    list_match = _LIST_TYPE_RE.match(type_ref)
    many = list_match is not None
    if list_match:
        type_ref = list_match.group("inner")
    if not _DOTTED_TYPE_RE.match(type_ref):
        raise ValueError(
            "sort-by-keys: -type must look like my_project.models.User "
            f"or list[my_project.models.User], got {args.type_ref!r}"
        )

    imports = ["collections.abc.Sequence", "typing.Optional"]
    package_path, _, name = type_ref.rpartition(".")
    if not package_path or package_path == package.path:
        type_package = package
        struct = sg.get_structural_type(type_package, name)
        type_name = name
        imports.append(_local_import(package, struct.module.name, name))
    else:
        type_package = sg.get_package(package_path)
        struct = sg.get_structural_type(type_package, name)
        type_name = f"{type_package.name}.{name}"
        imports.append(type_package.path)

    fields, field_imports = sg.resolve_fields(struct, package)
    key_field = next((f for f in fields if f.name == args.field_name), None)
    if key_field is None:
        raise ValueError(f"sort-by-keys: {type_name} has no field {args.field_name!r}")

    field_type = args.field_type
    if field_type is None:
        shape = key_field.shape
        if isinstance(shape, PointerType):
            shape = shape.elem
        field_type = str(shape)
        imports.extend(field_imports)

    function_name = to_snake_case(f"{name}List{args.suffix}SortByKeys")
    spec = SorterSpec(
        function_name=function_name,
        type_name=type_name,
        field_name=args.field_name,
        field_type=field_type,
        many=many,
    )
    return spec, imports


GENERATORS = {
    "paginator": TemplateGenerator(template=PAGINATOR_TEMPLATE, generator=paginator),
    "settable-input": TemplateGenerator(template=SETTABLE_TEMPLATE, generator=settable_input),
    "sort-by-keys": TemplateGenerator(template=SORTER_TEMPLATE, generator=sorter),
}

TEMPLATE_FUNCTIONS = {
    "format_settable_tags": format_settable_tags,
}
