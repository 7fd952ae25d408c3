"""Annotation-driven code generator for Python packages.

Scans source packages for declarations documented with a magic comment
(``# simplegen:<directive> [args...]``), hands every match to the directive's
generator function, and renders the collected results of each
(directive, package) pair through the directive's Jinja2 template into
``<package>/<directive>_gen.py``.

Usage:
    python simplegen.py --package my_project.models --generators codegen:GENERATORS
"""

import argparse
import ast
import builtins
import importlib
import io
import re
import shlex
import sys
import tokenize
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, NamedTuple

import black
import jinja2

CMD_KEY = "simplegen"
GENERATED_SUFFIX = "_gen.py"

PRIMARY_TAG_KEY = "json"
SECONDARY_TAG_KEY = "yaml"
SKIP_TAG_VALUE = "-"

POINTER_MARKER = "Optional"

HEADER_TEMPLATE = (
    "# Code generated by simplegen, DO NOT EDIT.\n"
    "{% for path in imports %}\n"
    "{{ import_stmt(path) }}\n"
    "{% endfor %}\n"
)
"""Prepended to every directive template before rendering.

Emits the generated-file marker and one import statement per collected
import identifier, in first-appearance order."""


# ===--- Errors ---=== #


class SimplegenError(Exception):
    code = "SIMPLEGEN_ERROR"

    def __init__(self, message: str, suggestion: str | None = None):
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion


class LoadError(SimplegenError):
    code = "LOAD_ERROR"


class NotFoundError(SimplegenError):
    code = "NOT_FOUND"


class NotAStructError(SimplegenError):
    code = "NOT_A_STRUCT"


class MissingSerializationKeyError(SimplegenError):
    code = "MISSING_SERIALIZATION_KEY"


class UnresolvedTypeError(SimplegenError):
    code = "UNRESOLVED_TYPE"


class GeneratorError(SimplegenError):
    code = "GENERATOR_ERROR"

    def __init__(
        self, directive: str, package_path: str, declaration: str, cause: Exception
    ):
        super().__init__(f"{directive}: {package_path}.{declaration}: {cause}")
        self.directive = directive
        self.package_path = package_path
        self.declaration = declaration
        self.cause = cause


class RenderError(SimplegenError):
    code = "RENDER_ERROR"


class FormatError(SimplegenError):
    code = "FORMAT_ERROR"


class WriteError(SimplegenError):
    code = "WRITE_ERROR"


class GenerationErrors(SimplegenError):
    """Every failure collected during one generate() run.

    Attributes:
        errors: Collected errors in the order they happened. Generator
            errors from the scan phase come first, then render, format and
            write errors from the output phase.
        written: Files that were written before the run was declared failed.
            They are not rolled back.
    """

    code = "GENERATION_FAILED"

    def __init__(
        self,
        errors: Iterable[SimplegenError],
        written: tuple["FileWriteResult", ...] = (),
    ):
        self.errors = tuple(errors)
        self.written = written
        super().__init__("\n".join(str(err) for err in self.errors))


# ===--- Source model ---=== #


@dataclass(eq=False)
class SourceModule:
    """One parsed module file of a package.

    Attributes:
        name: Dotted module name, e.g. "my_project.models.users". The
            package's __init__.py carries the package path itself.
        path: File the module was read from.
        tree: Parsed module body.
        comments: Comment-only source lines keyed by line number.
        docs: Attached documentation blocks keyed by statement node.
        imports: Local binding -> qualified dotted name, from import statements.
        defined: Top-level bound name -> binding statement.
    """

    name: str
    path: Path
    tree: ast.Module
    comments: dict[int, str]
    docs: dict[ast.stmt, tuple[str, ...]] = field(default_factory=dict)
    imports: dict[str, str] = field(default_factory=dict)
    defined: dict[str, ast.stmt] = field(default_factory=dict)


@dataclass(eq=False)
class Package:
    path: str
    name: str
    directory: Path
    modules: list[SourceModule]
    requested: bool = False

    def lookup(self, name: str) -> tuple[SourceModule, ast.stmt] | None:
        for module in self.modules:
            node = module.defined.get(name)
            if node is not None:
                return module, node
        return None


@dataclass(frozen=True, eq=False)
class Declaration:
    name: str
    node: ast.stmt
    module: SourceModule

    @property
    def doc(self) -> tuple[str, ...]:
        return self.module.docs.get(self.node, ())


@dataclass(frozen=True, eq=False)
class StructuralType:
    name: str
    node: ast.ClassDef
    module: SourceModule
    package: Package


@dataclass(frozen=True)
class Annotation:
    """A documentation line carrying the marker keyword for one directive.

    Attributes:
        comment: The raw comment line, e.g. "# simplegen:paginator".
        directive: Registered directive name this annotation matched.
    """

    comment: str
    directive: str

    @property
    def text(self) -> str:
        return self.comment.lstrip("#").strip()

    @property
    def arguments(self) -> str:
        """Everything after the ``simplegen:<directive>`` token, unparsed."""
        marker = f"{CMD_KEY}:"
        start = self.text.find(marker)
        if start < 0:
            return ""
        _, _, remainder = self.text[start:].partition(" ")
        return remainder.strip()

    @property
    def argv(self) -> list[str]:
        return shlex.split(self.arguments)


class Match(NamedTuple):
    directive: str
    package: Package
    declaration: Declaration
    annotation: Annotation


# ===--- Type shapes ---=== #


@dataclass(frozen=True)
class BasicType:
    name: str

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class PointerType:
    elem: "TypeShape"

    def __str__(self) -> str:
        return f"{POINTER_MARKER}[{self.elem}]"


@dataclass(frozen=True)
class SequenceType:
    container: str
    elem: "TypeShape"

    def __str__(self) -> str:
        if self.container == "tuple":
            return f"tuple[{self.elem}, ...]"
        return f"{self.container}[{self.elem}]"


@dataclass(frozen=True)
class MapType:
    key: "TypeShape"
    value: "TypeShape"

    def __str__(self) -> str:
        return f"dict[{self.key}, {self.value}]"


@dataclass(frozen=True)
class UnionType:
    options: tuple["TypeShape", ...]

    def __str__(self) -> str:
        return f"Union[{', '.join(str(option) for option in self.options)}]"


@dataclass(frozen=True)
class NamedType:
    """A declared type referenced by name.

    Attributes:
        package: Dotted path of the package that owns the declaration.
        module: Dotted path of the module the name was resolved in.
        name: Declared name.
        qualifier: Package short name used to render the reference. Empty
            when the type lives in the package the code is generated for.
    """

    package: str
    module: str
    name: str
    qualifier: str = ""

    def __str__(self) -> str:
        if self.qualifier:
            return f"{self.qualifier}.{self.name}"
        return self.name


@dataclass(frozen=True)
class InterfaceType:
    text: str

    def __str__(self) -> str:
        return self.text


TypeShape = (
    BasicType
    | PointerType
    | SequenceType
    | MapType
    | UnionType
    | NamedType
    | InterfaceType
)


@dataclass(frozen=True)
class FieldDescriptor:
    name: str
    type_name: str
    tags: str
    key: str
    shape: TypeShape


# ===--- Source parsing ---=== #

_COMPOUND_STATEMENTS = (ast.If, ast.Try, ast.With)


def _block_bodies(stmt: ast.stmt) -> list[list[ast.stmt]]:
    if isinstance(stmt, ast.If):
        return [stmt.body, stmt.orelse]
    if isinstance(stmt, ast.Try):
        return [
            stmt.body,
            *(handler.body for handler in stmt.handlers),
            stmt.orelse,
            stmt.finalbody,
        ]
    if isinstance(stmt, ast.With):
        return [stmt.body]
    return []


def iter_module_statements(body: list[ast.stmt]) -> Iterator[ast.stmt]:
    """Yield module-level statements in source order, descending into
    if/try/with blocks but never into functions or classes."""
    for stmt in body:
        yield stmt
        if isinstance(stmt, _COMPOUND_STATEMENTS):
            for block in _block_bodies(stmt):
                yield from iter_module_statements(block)


def read_comments(source: str) -> dict[int, str]:
    """Return comment-only lines of ``source`` keyed by 1-based line number.

    Trailing comments that follow code on the same line are excluded; they
    never form part of a documentation block.
    """
    comments: dict[int, str] = {}
    for token in tokenize.generate_tokens(io.StringIO(source).readline):
        if token.type != tokenize.COMMENT:
            continue
        row, col = token.start
        if token.line[:col].strip():
            continue
        comments[row] = token.string
    return comments


def _first_line(stmt: ast.stmt) -> int:
    decorators = getattr(stmt, "decorator_list", None) or []
    return min([stmt.lineno, *(decorator.lineno for decorator in decorators)])


def _comment_run(comments: dict[int, str], line: int) -> list[str]:
    block: list[str] = []
    while line in comments:
        block.append(comments[line])
        line -= 1
    return list(reversed(block))


def attach_docs(tree: ast.Module, comments: dict[int, str]) -> dict[ast.stmt, tuple[str, ...]]:
    """Attach to each statement the comment block directly above it.

    The block is the run of comment-only lines ending on the line before the
    statement's first decorator, followed by the run ending on the line before
    the statement keyword itself when decorators sit in between. A blank line
    ends a run.
    """
    docs: dict[ast.stmt, tuple[str, ...]] = {}
    for node in ast.walk(tree):
        if not isinstance(node, ast.stmt):
            continue
        first_line = _first_line(node)
        block = _comment_run(comments, first_line - 1)
        if first_line != node.lineno:
            block += _comment_run(comments, node.lineno - 1)
        if block:
            docs[node] = tuple(block)
    return docs


def _resolve_relative(module_name: str, is_package: bool, level: int, target: str | None) -> str:
    parts = module_name.split(".")
    if not is_package:
        parts = parts[:-1]
    if level > 1:
        parts = parts[: len(parts) - (level - 1)]
    base = ".".join(parts)
    if target:
        return f"{base}.{target}" if base else target
    return base


def collect_imports(tree: ast.Module, module_name: str, is_package: bool) -> dict[str, str]:
    imports: dict[str, str] = {}
    for stmt in iter_module_statements(tree.body):
        if isinstance(stmt, ast.Import):
            for alias in stmt.names:
                if alias.asname:
                    imports[alias.asname] = alias.name
                else:
                    top = alias.name.split(".")[0]
                    imports[top] = top
        elif isinstance(stmt, ast.ImportFrom):
            if stmt.level:
                base = _resolve_relative(module_name, is_package, stmt.level, stmt.module)
            else:
                base = stmt.module or ""
            for alias in stmt.names:
                if alias.name == "*":
                    continue
                imports[alias.asname or alias.name] = f"{base}.{alias.name}"
    return imports


def collect_defined(tree: ast.Module) -> dict[str, ast.stmt]:
    type_alias_node_type = getattr(ast, "TypeAlias", None)
    defined: dict[str, ast.stmt] = {}
    for stmt in iter_module_statements(tree.body):
        if isinstance(stmt, ast.ClassDef):
            defined[stmt.name] = stmt
        elif isinstance(stmt, ast.AnnAssign) and isinstance(stmt.target, ast.Name):
            defined[stmt.target.id] = stmt
        elif isinstance(stmt, ast.Assign):
            for target in stmt.targets:
                if isinstance(target, ast.Name):
                    defined[target.id] = stmt
        elif type_alias_node_type is not None and isinstance(stmt, type_alias_node_type):
            defined[stmt.name.id] = stmt
    return defined


def parse_module(path: Path, name: str, is_package: bool = False) -> SourceModule:
    """Read and parse one module file into a SourceModule.

    Raises:
        OSError: The file cannot be read.
        SyntaxError: The file is not valid Python.
    """
    source = path.read_text(encoding="utf-8")
    tree = ast.parse(source, filename=str(path))
    comments = read_comments(source)
    return SourceModule(
        name=name,
        path=path,
        tree=tree,
        comments=comments,
        docs=attach_docs(tree, comments),
        imports=collect_imports(tree, name, is_package),
        defined=collect_defined(tree),
    )


# ===--- Name qualification ---=== #


def _normalize_qualified(name: str | None) -> str | None:
    if name is not None and name.startswith("typing_extensions."):
        return "typing." + name.removeprefix("typing_extensions.")
    return name


def qualify_name(node: ast.expr, module: SourceModule) -> str | None:
    """Return the fully qualified dotted name ``node`` refers to in ``module``.

    Names bound by imports resolve through the import table, names declared
    in the module resolve to ``<module>.<name>``, and remaining builtins
    resolve to ``builtins.<name>``. Anything else yields None.
    """
    if isinstance(node, ast.Name):
        if node.id in module.imports:
            qualified = module.imports[node.id]
        elif node.id in module.defined:
            qualified = f"{module.name}.{node.id}"
        elif hasattr(builtins, node.id):
            qualified = f"builtins.{node.id}"
        else:
            return None
        return _normalize_qualified(qualified)
    if isinstance(node, ast.Attribute):
        base = qualify_name(node.value, module)
        if base is None:
            return None
        return _normalize_qualified(f"{base}.{node.attr}")
    return None


def is_type_alias(stmt: ast.stmt, module: SourceModule) -> bool:
    type_alias_node_type = getattr(ast, "TypeAlias", None)
    if type_alias_node_type is not None and isinstance(stmt, type_alias_node_type):
        return True
    return (
        isinstance(stmt, ast.AnnAssign)
        and isinstance(stmt.target, ast.Name)
        and stmt.value is not None
        and qualify_name(stmt.annotation, module) == "typing.TypeAlias"
    )


def iter_declarations(module: SourceModule) -> Iterator[Declaration]:
    """Yield the module's class and type alias declarations in source order."""
    for stmt in iter_module_statements(module.tree.body):
        if isinstance(stmt, ast.ClassDef):
            yield Declaration(name=stmt.name, node=stmt, module=module)
        elif is_type_alias(stmt, module):
            name = stmt.target.id if isinstance(stmt, ast.AnnAssign) else stmt.name.id
            yield Declaration(name=name, node=stmt, module=module)


# ===--- Declaration index ---=== #

_PACKAGE_PATH_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")

_NON_STRUCT_BASES = frozenset(
    {
        "enum.Enum",
        "enum.IntEnum",
        "enum.StrEnum",
        "enum.Flag",
        "enum.IntFlag",
        "typing.Protocol",
        "builtins.Exception",
        "builtins.BaseException",
    }
)


class DeclarationIndex:
    """Packages loaded from one source root, keyed by dotted package path.

    The index is the only place that decides whether a package has been
    loaded already; every package is parsed at most once per index.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.packages: dict[str, Package] = {}

    def load(self, package_paths: Iterable[str]) -> list[Package]:
        """Load the requested packages in order.

        Args:
            package_paths: Dotted package paths relative to the root.
                Repeated paths collapse onto the first occurrence.

        Returns:
            The distinct packages in request order, each marked requested.

        Raises:
            LoadError: Any package cannot be resolved or parsed. Loading
                stops at the first failure.
        """
        loaded: list[Package] = []
        for path in package_paths:
            package = self.get_package(path)
            package.requested = True
            if package not in loaded:
                loaded.append(package)
        return loaded

    def get_package(self, path: str) -> Package:
        package = self.packages.get(path)
        if package is None:
            package = self._load_package(path)
            self.packages[path] = package
        return package

    def _load_package(self, path: str) -> Package:
        if not _PACKAGE_PATH_RE.match(path):
            raise LoadError(
                f"Invalid package path: {path!r}",
                "Use a dotted package path such as my_project.models.",
            )
        directory = self.root.joinpath(*path.split("."))
        if not directory.is_dir():
            if directory.with_suffix(".py").is_file():
                raise LoadError(
                    f"{path} is a module, not a package",
                    "Pass the package that contains the module.",
                )
            raise LoadError(
                f"Cannot find package {path} under {self.root}",
                "Check --root and the package path.",
            )

        files = sorted(p for p in directory.glob("*.py") if p.is_file())
        if not files:
            raise LoadError(f"Package {path} has no Python modules")

        modules: list[SourceModule] = []
        for file_path in files:
            is_package = file_path.stem == "__init__"
            name = path if is_package else f"{path}.{file_path.stem}"
            try:
                modules.append(parse_module(file_path, name, is_package))
            except (OSError, UnicodeDecodeError, SyntaxError) as err:
                raise LoadError(f"Cannot load {file_path}: {err}") from err

        return Package(
            path=path,
            name=path.rpartition(".")[2],
            directory=directory,
            modules=modules,
        )

    def is_local(self, module_path: str) -> bool:
        location = self.root.joinpath(*module_path.split("."))
        return location.is_dir() or location.with_suffix(".py").is_file()

    def locate(self, module_path: str) -> str:
        """Return the path of the package that owns ``module_path``.

        A package directory under the root owns itself, a module file under
        the root belongs to its parent package, and anything outside the
        root (stdlib, third-party) is treated as its own package.
        """
        location = self.root.joinpath(*module_path.split("."))
        if location.is_dir():
            return module_path
        parent = module_path.rpartition(".")[0]
        if parent and location.with_suffix(".py").is_file():
            return parent
        return module_path

    def get_structural_type(self, package: Package, type_name: str) -> StructuralType:
        """Find the field-bearing class ``type_name`` declared in ``package``.

        Raises:
            NotFoundError: No top-level declaration of that name exists in
                any module of the package.
            NotAStructError: The declaration is an alias or assignment, or a
                class deriving from an enum, protocol or exception type.
        """
        found = package.lookup(type_name)
        if found is None:
            raise NotFoundError(
                f"{type_name} not found in declared types of {package.path}"
            )
        module, node = found
        if not isinstance(node, ast.ClassDef):
            raise NotAStructError(f"Type {package.path}.{type_name} is not a struct")
        for base in node.bases:
            if isinstance(base, ast.Subscript):
                base = base.value
            if qualify_name(base, module) in _NON_STRUCT_BASES:
                raise NotAStructError(
                    f"Type {package.path}.{type_name} is not a struct "
                    f"(derives from {ast.unparse(base)})"
                )
        return StructuralType(name=type_name, node=node, module=module, package=package)


# ===--- Metadata extraction ---=== #

_TAG_RE = re.compile(r'(?:^|\s)([A-Za-z0-9_.-]+):"((?:[^"\\]|\\.)*)"')

_SEQUENCE_ORIGINS = {
    "builtins.list": "list",
    "typing.List": "list",
    "builtins.set": "set",
    "typing.Set": "set",
    "builtins.frozenset": "frozenset",
    "typing.FrozenSet": "frozenset",
    "builtins.tuple": "tuple",
    "typing.Tuple": "tuple",
}
_MAP_ORIGINS = frozenset({"builtins.dict", "typing.Dict"})
_INTERFACE_ORIGINS = frozenset(
    {"typing.Any", "builtins.object", "typing.Callable", "collections.abc.Callable"}
)


def parse_tag(tags: str, key: str) -> str | None:
    """Return the value of ``key`` in a ``key:"value,options"`` tag string.

    Only the part before the first comma is returned. Returns None when the
    key is absent.

    >>> parse_tag('yaml:"phoneYaml" json:"phone,omitempty"', "json")
    'phone'
    """
    for match in _TAG_RE.finditer(tags):
        if match.group(1) == key:
            value = match.group(2).replace('\\"', '"')
            return value.split(",")[0]
    return None


def parse_serialization_key(tags: str) -> str:
    """Return the field's serialization key, or "" when it has none.

    ``json`` wins over ``yaml``. The skip value ``-`` counts as absent.
    """
    for key in (PRIMARY_TAG_KEY, SECONDARY_TAG_KEY):
        value = parse_tag(tags, key)
        if value and value != SKIP_TAG_VALUE:
            return value
    return ""


def _subscript_args(node: ast.Subscript) -> list[ast.expr]:
    if isinstance(node.slice, ast.Tuple):
        return list(node.slice.elts)
    return [node.slice]


def _is_none(node: ast.expr) -> bool:
    return isinstance(node, ast.Constant) and node.value is None


def _flatten_union(node: ast.expr) -> list[ast.expr]:
    if isinstance(node, ast.BinOp) and isinstance(node.op, ast.BitOr):
        return _flatten_union(node.left) + _flatten_union(node.right)
    return [node]


def _unique(items: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))


def split_annotated(node: ast.expr, module: SourceModule) -> tuple[ast.expr | None, str]:
    """Split a field annotation into (type, raw tag string).

    ``Annotated[T, 'json:"x"']`` yields ``(T, 'json:"x"')``; plain ``T``
    yields ``(T, "")``. ``ClassVar[...]`` is not a field and yields
    ``(None, "")``. A string annotation is parsed first.
    """
    if isinstance(node, ast.Constant) and isinstance(node.value, str):
        try:
            node = ast.parse(node.value, mode="eval").body
        except SyntaxError as err:
            raise UnresolvedTypeError(
                f"Invalid forward reference {node.value!r} in {module.name}"
            ) from err
        return split_annotated(node, module)
    if not isinstance(node, ast.Subscript):
        return node, ""
    origin = qualify_name(node.value, module)
    if origin == "typing.ClassVar":
        return None, ""
    if origin != "typing.Annotated":
        return node, ""
    args = _subscript_args(node)
    for extra in args[1:]:
        if isinstance(extra, ast.Constant) and isinstance(extra.value, str):
            return args[0], extra.value
    return args[0], ""


def resolve_type(
    index: DeclarationIndex,
    node: ast.expr,
    module: SourceModule,
    package: Package,
) -> tuple[TypeShape, list[str]]:
    """Resolve an annotation expression into a TypeShape and its imports.

    Args:
        index: Index used to decide which package owns a referenced name.
        node: Annotation expression as written in ``module``.
        module: Module the annotation appears in; its imports and
            declarations are the naming scope.
        package: Package the generated code will live in. Named types
            declared there render unqualified and need no import.

    Returns:
        The resolved shape and the import identifiers it requires, in
        first-appearance order. Only named types from other packages
        contribute an import.

    Raises:
        UnresolvedTypeError: A name cannot be resolved, or the annotation
            uses a shape with no TypeShape variant.
    """
    if isinstance(node, ast.Constant):
        if node.value is None:
            return BasicType("None"), []
        if isinstance(node.value, str):
            try:
                forward = ast.parse(node.value, mode="eval").body
            except SyntaxError as err:
                raise UnresolvedTypeError(
                    f"Invalid forward reference {node.value!r} in {module.name}"
                ) from err
            return resolve_type(index, forward, module, package)
        raise UnresolvedTypeError(
            f"Unsupported type annotation {ast.unparse(node)} in {module.name}"
        )

    if isinstance(node, ast.BinOp) and isinstance(node.op, ast.BitOr):
        return _resolve_union(index, _flatten_union(node), module, package)

    if isinstance(node, ast.Subscript):
        origin = qualify_name(node.value, module)
        args = _subscript_args(node)
        if origin == "typing.Optional":
            elem, imports = resolve_type(index, args[0], module, package)
            return PointerType(elem), imports
        if origin == "typing.Union":
            return _resolve_union(index, args, module, package)
        if origin == "typing.Annotated":
            return resolve_type(index, args[0], module, package)
        if origin in _SEQUENCE_ORIGINS:
            container = _SEQUENCE_ORIGINS[origin]
            if container == "tuple" and not (
                len(args) == 2
                and isinstance(args[1], ast.Constant)
                and args[1].value is Ellipsis
            ):
                raise UnresolvedTypeError(
                    f"Only homogeneous tuple[T, ...] is supported, got "
                    f"{ast.unparse(node)} in {module.name}"
                )
            elem, imports = resolve_type(index, args[0], module, package)
            return SequenceType(container, elem), imports
        if origin in _MAP_ORIGINS and len(args) == 2:
            key, key_imports = resolve_type(index, args[0], module, package)
            value, value_imports = resolve_type(index, args[1], module, package)
            return MapType(key, value), _unique(key_imports + value_imports)
        if origin in _INTERFACE_ORIGINS:
            return InterfaceType(ast.unparse(node)), []
        raise UnresolvedTypeError(
            f"Unsupported generic type {ast.unparse(node)} in {module.name}"
        )

    if isinstance(node, (ast.Name, ast.Attribute)):
        qualified = qualify_name(node, module)
        if qualified is None:
            raise UnresolvedTypeError(
                f"Cannot resolve type {ast.unparse(node)} in {module.name}",
                "Import the type or declare it in the package.",
            )
        if qualified in _INTERFACE_ORIGINS:
            return InterfaceType(ast.unparse(node)), []
        module_path, _, name = qualified.rpartition(".")
        if module_path == "builtins":
            return BasicType(name), []
        owner = index.locate(module_path)
        if owner == package.path:
            return NamedType(package=owner, module=module_path, name=name), []
        short_name = owner.rpartition(".")[2]
        return (
            NamedType(package=owner, module=module_path, name=name, qualifier=short_name),
            [owner],
        )

    raise UnresolvedTypeError(
        f"Unsupported type annotation {ast.unparse(node)} in {module.name}"
    )


def _resolve_union(
    index: DeclarationIndex,
    options: list[ast.expr],
    module: SourceModule,
    package: Package,
) -> tuple[TypeShape, list[str]]:
    optional = any(_is_none(option) for option in options)
    shapes: list[TypeShape] = []
    imports: list[str] = []
    for option in options:
        if _is_none(option):
            continue
        shape, option_imports = resolve_type(index, option, module, package)
        shapes.append(shape)
        imports.extend(option_imports)
    if not shapes:
        return BasicType("None"), []
    inner = shapes[0] if len(shapes) == 1 else UnionType(tuple(shapes))
    if optional:
        return PointerType(inner), _unique(imports)
    return inner, _unique(imports)


def _resolve_base(
    index: DeclarationIndex, base: ast.expr, module: SourceModule
) -> StructuralType | None:
    if isinstance(base, ast.Subscript):
        base = base.value
    qualified = qualify_name(base, module)
    if qualified is None:
        raise UnresolvedTypeError(
            f"Cannot resolve base class {ast.unparse(base)} in {module.name}"
        )
    module_path, _, name = qualified.rpartition(".")
    if not module_path or not index.is_local(module_path):
        return None
    owner = index.get_package(index.locate(module_path))
    return index.get_structural_type(owner, name)


def _splice(fields: list[FieldDescriptor], new_fields: list[FieldDescriptor]) -> None:
    # A redefined field keeps the position of its first definition.
    positions = {descriptor.name: i for i, descriptor in enumerate(fields)}
    for descriptor in new_fields:
        if descriptor.name in positions:
            fields[positions[descriptor.name]] = descriptor
        else:
            positions[descriptor.name] = len(fields)
            fields.append(descriptor)


def resolve_fields(
    index: DeclarationIndex,
    struct: StructuralType,
    package: Package | None = None,
    _resolving: frozenset[tuple[str, str]] = frozenset(),
) -> tuple[list[FieldDescriptor], list[str]]:
    """Flatten a structural type into ordered FieldDescriptors.

    Base classes that resolve to structural types under the source root are
    flattened first, in declaration order, at the position they are listed;
    then the class's own annotated fields follow in source order. Bases from
    outside the root contribute nothing. ClassVar annotations are skipped.

    Args:
        index: Index used to load packages that declare base classes.
        struct: The class to flatten.
        package: Package the generated code will live in. Defaults to the
            package that declares ``struct``.

    Returns:
        (fields, imports): descriptors in flattened order and the import
        identifiers their types need, deduplicated in first-appearance order.

    Raises:
        MissingSerializationKeyError: A field has neither a json nor a yaml tag.
        UnresolvedTypeError: A field type or base class cannot be resolved.
        LoadError, NotFoundError, NotAStructError: A base class lookup failed.
    """
    if package is None:
        package = struct.package
    key = (struct.package.path, struct.name)
    if key in _resolving:
        return [], []
    resolving = _resolving | {key}

    fields: list[FieldDescriptor] = []
    imports: list[str] = []

    for base in struct.node.bases:
        base_struct = _resolve_base(index, base, struct.module)
        if base_struct is None:
            continue
        base_fields, base_imports = resolve_fields(index, base_struct, package, resolving)
        _splice(fields, base_fields)
        imports.extend(base_imports)

    for stmt in struct.node.body:
        if not (isinstance(stmt, ast.AnnAssign) and isinstance(stmt.target, ast.Name)):
            continue
        annotation, tags = split_annotated(stmt.annotation, struct.module)
        if annotation is None:
            continue
        name = stmt.target.id
        serialization_key = parse_serialization_key(tags)
        if not serialization_key:
            raise MissingSerializationKeyError(
                f"Type {struct.package.path}.{struct.name}: field {name} "
                f"should have a {PRIMARY_TAG_KEY}/{SECONDARY_TAG_KEY} tag",
                f"Annotate it as Annotated[..., '{PRIMARY_TAG_KEY}:\"{name}\"'].",
            )
        shape, field_imports = resolve_type(index, annotation, struct.module, package)
        _splice(
            fields,
            [
                FieldDescriptor(
                    name=name,
                    type_name=str(shape),
                    tags=tags,
                    key=serialization_key,
                    shape=shape,
                )
            ],
        )
        imports.extend(field_imports)

    return fields, _unique(imports)


# ===--- Scanning ---=== #


def copy_block_docs(module: SourceModule) -> None:
    """Copy documentation of if/try/with blocks down to their declarations.

    A comment block above a compound statement documents every class and
    type alias declared directly inside it, unless the declaration carries a
    comment block of its own. Must run over every scanned module before
    scan(); running it again is a no-op.
    """

    def visit(body: list[ast.stmt], inherited: tuple[str, ...]) -> None:
        for stmt in body:
            if (
                inherited
                and stmt not in module.docs
                and (isinstance(stmt, ast.ClassDef) or is_type_alias(stmt, module))
            ):
                module.docs[stmt] = inherited
            if isinstance(stmt, _COMPOUND_STATEMENTS):
                block_doc = module.docs.get(stmt, inherited)
                for block in _block_bodies(stmt):
                    visit(block, block_doc)

    visit(module.tree.body, ())


def scan(packages: Iterable[Package], directives: Iterable[str]) -> list[Match]:
    """Find every (directive, declaration) match in ``packages``.

    Every doc line that contains the marker keyword is tested against every
    directive name; each directive whose name occurs in the line matches, so
    one line can fire several directives.

    Returns:
        Matches ordered by package, module file, declaration position, doc
        line, then directive registration order.
    """
    directive_names = list(directives)
    matches: list[Match] = []
    for package in packages:
        for module in package.modules:
            for declaration in iter_declarations(module):
                for comment in declaration.doc:
                    if CMD_KEY not in comment:
                        continue
                    for directive in directive_names:
                        if directive in comment:
                            matches.append(
                                Match(
                                    directive=directive,
                                    package=package,
                                    declaration=declaration,
                                    annotation=Annotation(comment, directive),
                                )
                            )
    return matches


# ===--- Registry and aggregation ---=== #

SpecData = Any
"""Directive-defined record handed to the directive's template untouched."""

GeneratorFunc = Callable[
    ["SimpleGenerator", Package, Declaration, Annotation],
    tuple[SpecData, list[str]],
]


@dataclass(frozen=True)
class TemplateGenerator:
    """A directive: its Jinja2 template and the function feeding it.

    Attributes:
        template: Template source. Rendered with ``package_name``,
            ``imports`` and ``specs`` for each (directive, package) group.
        generator: Called once per annotated declaration. Returns the spec
            data for the template and the import identifiers it needs.
    """

    template: str
    generator: GeneratorFunc


GeneratorsMap = dict[str, TemplateGenerator]

_DIRECTIVE_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass
class GenerationGroup:
    directive: str
    package: Package
    package_name: str
    specs: list[SpecData] = field(default_factory=list)
    imports: list[str] = field(default_factory=list)

    def add(self, spec_data: SpecData, imports: Iterable[str]) -> None:
        self.specs.append(spec_data)
        for path in imports:
            if path not in self.imports:
                self.imports.append(path)


class Aggregator:
    """Generation groups keyed by (directive, package path), in creation order."""

    def __init__(self) -> None:
        self.groups: dict[tuple[str, str], GenerationGroup] = {}

    def record(
        self,
        directive: str,
        package: Package,
        spec_data: SpecData,
        imports: Iterable[str],
    ) -> GenerationGroup:
        key = (directive, package.path)
        group = self.groups.get(key)
        if group is None:
            group = GenerationGroup(
                directive=directive, package=package, package_name=package.name
            )
            self.groups[key] = group
        group.add(spec_data, imports)
        return group

    def __iter__(self) -> Iterator[GenerationGroup]:
        return iter(self.groups.values())

    def __len__(self) -> int:
        return len(self.groups)


# ===--- Rendering ---=== #


def import_stmt(path: str) -> str:
    """Render an import identifier as an import statement.

    "time" -> "import time", "my_project.models" -> "from my_project import
    models", ".User" -> "from . import User".
    """
    stripped = path.lstrip(".")
    dots = "." * (len(path) - len(stripped))
    parent, _, name = stripped.rpartition(".")
    if dots:
        return f"from {dots}{parent} import {name}"
    if parent:
        return f"from {parent} import {name}"
    return f"import {name}"


def tags_literal(tags: str) -> str:
    return repr(tags)


DEFAULT_TEMPLATE_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "import_stmt": import_stmt,
    "tags_literal": tags_literal,
}


def build_environment(
    template_functions: dict[str, Callable[..., Any]] | None = None,
) -> jinja2.Environment:
    env = jinja2.Environment(
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
        undefined=jinja2.StrictUndefined,
    )
    helpers = {**DEFAULT_TEMPLATE_FUNCTIONS, **(template_functions or {})}
    env.globals.update(helpers)
    env.filters.update(helpers)
    return env


def render_group(env: jinja2.Environment, group: GenerationGroup, template: str) -> str:
    """Render one group through the header plus its directive template.

    Raises:
        RenderError: The template does not compile or fails while rendering,
            including failures raised by helper functions.
    """
    try:
        compiled = env.from_string(HEADER_TEMPLATE + template)
        return compiled.render(
            package_name=group.package_name,
            imports=list(group.imports),
            specs=list(group.specs),
        )
    except Exception as err:
        raise RenderError(
            f"{group.directive}: {group.package.path}: cannot render template: {err}"
        ) from err


def format_source(source: str, label: str) -> str:
    """Validate and canonicalize generated source.

    Raises:
        FormatError: The source is not valid Python.
    """
    try:
        ast.parse(source)
        return black.format_str(source, mode=black.Mode())
    except (SyntaxError, black.InvalidInput) as err:
        raise FormatError(f"{label}: generated code is not valid Python: {err}") from err


def output_filename(directive: str) -> str:
    """Return ``<directive>_gen.py``.

    Dashes in the directive name become underscores so the generated module
    is importable.
    """
    return f"{directive.replace('-', '_')}{GENERATED_SUFFIX}"


def output_path(package: Package, directive: str) -> Path:
    return package.directory / output_filename(directive)


# ===--- Writer ---=== #


@dataclass(frozen=True)
class FileWriteResult:
    """Result of writing a single generated file.

    Attributes:
        filename: Filename written, e.g. "paginator_gen.py".
        path: Absolute path of the written file.
        line_count: Number of newline characters in the written content.
        byte_count: Number of bytes written (UTF-8 encoded).
    """

    filename: str
    path: Path
    line_count: int
    byte_count: int


@dataclass(frozen=True)
class GenerationResult:
    files: tuple[FileWriteResult, ...]

    @property
    def total_lines(self) -> int:
        return sum(f.line_count for f in self.files)


def write_file(path: Path, content: str) -> FileWriteResult:
    """(Re)create ``path`` with ``content``.

    Raises:
        WriteError: The filesystem write fails.
    """
    try:
        path.write_text(content, encoding="utf-8")
    except OSError as err:
        raise WriteError(f"Cannot write {path}: {err}") from err
    return FileWriteResult(
        filename=path.name,
        path=path.resolve(),
        line_count=content.count("\n"),
        byte_count=len(content.encode("utf-8")),
    )


# ===--- Engine ---=== #


class SimpleGenerator:
    """One generation run over a fixed set of packages and directives.

    The generator instance owns all run state: the declaration index, the
    directive registry and the template environment. Generator functions
    receive it as their first argument to look up packages, structural
    types and fields.
    """

    def __init__(
        self,
        packages: Iterable[str],
        generators: GeneratorsMap,
        template_functions: dict[str, Callable[..., Any]] | None = None,
        root: Path | None = None,
    ):
        filenames: dict[str, str] = {}
        for name in generators:
            if not _DIRECTIVE_NAME_RE.match(name):
                raise ValueError(f"Invalid directive name: {name!r}")
            filename = output_filename(name)
            if filename in filenames:
                raise ValueError(
                    f"Directives {filenames[filename]!r} and {name!r} "
                    f"would both write {filename}"
                )
            filenames[filename] = name
        self.root = Path.cwd() if root is None else Path(root)
        self.generators: GeneratorsMap = dict(generators)
        self.env = build_environment(template_functions)
        self.index = DeclarationIndex(self.root)
        self.packages = self.index.load(packages)

    def get_package(self, path: str) -> Package:
        """Return a package, loading it on demand if it was not loaded yet."""
        return self.index.get_package(path)

    def get_structural_type(self, package: Package, type_name: str) -> StructuralType:
        return self.index.get_structural_type(package, type_name)

    def resolve_fields(
        self, struct: StructuralType, package: Package | None = None
    ) -> tuple[list[FieldDescriptor], list[str]]:
        return resolve_fields(self.index, struct, package)

    def resolve_type(
        self, node: ast.expr, module: SourceModule, package: Package
    ) -> tuple[TypeShape, list[str]]:
        return resolve_type(self.index, node, module, package)

    def dispatch(self, match: Match) -> tuple[SpecData, list[str]]:
        """Run the matched directive's generator function.

        Raises:
            GeneratorError: The function raised, or returned something other
                than a (spec_data, imports) pair.
        """
        generator = self.generators[match.directive].generator
        try:
            spec_data, imports = generator(
                self, match.package, match.declaration, match.annotation
            )
            return spec_data, list(imports or [])
        except Exception as err:
            raise GeneratorError(
                match.directive, match.package.path, match.declaration.name, err
            ) from err

    def render(self, group: GenerationGroup) -> str:
        text = render_group(self.env, group, self.generators[group.directive].template)
        return format_source(text, f"{group.directive}: {group.package.path}")

    def write_group(self, group: GenerationGroup) -> FileWriteResult:
        return write_file(output_path(group.package, group.directive), self.render(group))

    def generate(self) -> GenerationResult:
        """Scan, dispatch, render and write, in that order.

        Generator failures are collected and do not stop the scan. A group
        that saw a generator failure is not rendered, so no incomplete file
        is written for it. Render, format and write failures are collected
        per group. Files written before a failure stay on disk.

        Returns:
            The written files, in group creation order.

        Raises:
            GenerationErrors: At least one match or group failed. Raised
                after every group has been attempted.
        """
        for package in self.packages:
            for module in package.modules:
                copy_block_docs(module)

        aggregator = Aggregator()
        failed: set[tuple[str, str]] = set()
        errors: list[SimplegenError] = []

        for match in scan(self.packages, self.generators):
            try:
                spec_data, imports = self.dispatch(match)
            except GeneratorError as err:
                errors.append(err)
                failed.add((match.directive, match.package.path))
                continue
            aggregator.record(match.directive, match.package, spec_data, imports)

        files: list[FileWriteResult] = []
        for group in aggregator:
            if (group.directive, group.package.path) in failed:
                continue
            try:
                files.append(self.write_group(group))
            except (RenderError, FormatError, WriteError) as err:
                errors.append(err)

        if errors:
            raise GenerationErrors(errors, written=tuple(files))
        return GenerationResult(files=tuple(files))


# ===--- CLI config contracts ---=== #


@dataclass(frozen=True)
class GenerateConfig:
    packages: tuple[str, ...]
    generators: str
    template_functions: str | None
    root: Path


VALID_ERROR_CODES = {
    "MISSING_PACKAGE",
    "INVALID_PACKAGE_NAME",
    "INVALID_OBJECT_REF",
    "OBJECT_NOT_FOUND",
    "PATH_NOT_FOUND",
}
_OBJECT_REF_RE = re.compile(r"^[A-Za-z_][\w.]*:[A-Za-z_][\w.]*$")


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


def validate_package_name(name: str) -> str:
    if _PACKAGE_PATH_RE.match(name):
        return name
    raise ConfigError(
        "INVALID_PACKAGE_NAME",
        f"Invalid package name: {name}",
        "Package names are dotted import paths (for example my_project.models).",
    )


def validate_object_ref(ref: str, flag: str) -> str:
    if _OBJECT_REF_RE.match(ref):
        return ref
    raise ConfigError(
        "INVALID_OBJECT_REF",
        f"Invalid {flag} reference: {ref}",
        f"Use module:attribute, for example {flag} codegen:GENERATORS.",
    )


def validate_path_exists(path: Path, flag: str) -> Path:
    if path.is_dir():
        return path
    raise ConfigError(
        "PATH_NOT_FOUND",
        f"Directory for {flag} does not exist: {path}",
        "Provide an existing directory for this flag.",
    )


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate code from simplegen magic comments"
    )
    parser.add_argument(
        "--package",
        dest="packages",
        action="append",
        default=None,
        help="Package where simplegen should find magic comments (repeatable)",
    )
    parser.add_argument(
        "--generators",
        type=str,
        default=None,
        help="module:attribute of the directive registry",
    )
    parser.add_argument(
        "--template-functions",
        type=str,
        default=None,
        help="module:attribute of extra template helper functions",
    )
    parser.add_argument("--root", type=Path, default=None)
    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def validate_config(args: argparse.Namespace) -> GenerateConfig:
    if not args.packages:
        raise ConfigError(
            "MISSING_PACKAGE",
            "At least one --package is required.",
            "Pass --package my_project.models (repeat for more packages).",
        )
    packages = tuple(dict.fromkeys(validate_package_name(p) for p in args.packages))

    if args.generators is None:
        raise ConfigError(
            "INVALID_OBJECT_REF",
            "--generators is required.",
            "Use module:attribute, for example --generators codegen:GENERATORS.",
        )
    generators = validate_object_ref(args.generators, "--generators")
    template_functions = (
        validate_object_ref(args.template_functions, "--template-functions")
        if args.template_functions is not None
        else None
    )

    root = validate_path_exists(
        Path.cwd() if args.root is None else args.root, "--root"
    )
    return GenerateConfig(
        packages=packages,
        generators=generators,
        template_functions=template_functions,
        root=root,
    )


def build_config(argv: list[str] | None = None) -> GenerateConfig:
    return validate_config(parse_args(argv))


def load_object(ref: str, root: Path) -> Any:
    """Import ``module:attribute`` with ``root`` on the import path."""
    module_name, _, attribute = ref.partition(":")
    root_entry = str(Path(root).resolve())
    if root_entry not in sys.path:
        sys.path.insert(0, root_entry)
    try:
        obj: Any = importlib.import_module(module_name)
    except ImportError as err:
        raise ConfigError(
            "OBJECT_NOT_FOUND",
            f"Cannot import {module_name}: {err}",
            "Check that the module is importable from --root.",
        ) from err
    for part in attribute.split("."):
        try:
            obj = getattr(obj, part)
        except AttributeError as err:
            raise ConfigError(
                "OBJECT_NOT_FOUND",
                f"{module_name} has no attribute {attribute}",
            ) from err
    return obj


# ===--- Summary report ---=== #


@dataclass(frozen=True)
class GenerationSummary:
    root: Path
    packages: tuple[str, ...]
    directives: tuple[str, ...]
    files: tuple[FileWriteResult, ...]


def build_generation_summary(
    config: GenerateConfig, directives: Iterable[str], files: tuple[FileWriteResult, ...]
) -> GenerationSummary:
    return GenerationSummary(
        root=config.root,
        packages=config.packages,
        directives=tuple(directives),
        files=files,
    )


def _display_path(path: Path, root: Path) -> str:
    try:
        return str(path.relative_to(root.resolve()))
    except ValueError:
        return str(path)


def format_generation_summary(summary: GenerationSummary) -> str:
    """Render a GenerationSummary as the console report.

    File paths are shown relative to the root when possible. Line counts use
    thousands separators. Returns a string with exactly one trailing newline.
    """
    lines: list[str] = []
    lines.append("simplegen output:")
    lines.append("")
    lines.append(f"  Root:        {summary.root}")
    lines.append(f"  Packages:    {', '.join(summary.packages)}")
    lines.append(f"  Directives:  {', '.join(summary.directives)}")
    lines.append("")
    if summary.files:
        lines.append("  Files written:")
        width = max(len(_display_path(f.path, summary.root)) for f in summary.files)
        for file_result in summary.files:
            name = _display_path(file_result.path, summary.root)
            lines.append(f"    {name:<{width}}  {file_result.line_count:>6,} lines")
        lines.append("")
    total_lines = sum(f.line_count for f in summary.files)
    lines.append(f"  Total: {total_lines:,} lines across {len(summary.files)} files")
    return "\n".join(lines) + "\n"


def print_generation_summary(summary: GenerationSummary) -> None:
    print(format_generation_summary(summary), end="")


# ===--- Main generation ---=== #


def run_generate(config: GenerateConfig) -> GenerationResult:
    """Load the registry, run one generation and print the report.

    Raises:
        ConfigError: The registry or helper reference cannot be imported.
        LoadError: A requested package cannot be loaded.
        GenerationErrors: One or more matches or groups failed.
    """
    generators = load_object(config.generators, config.root)
    template_functions = (
        load_object(config.template_functions, config.root)
        if config.template_functions is not None
        else None
    )

    print(f"Loading: {', '.join(config.packages)}")
    sg = SimpleGenerator(config.packages, generators, template_functions, config.root)
    module_count = sum(len(package.modules) for package in sg.packages)
    print(f"  Loaded: {len(sg.packages)} packages, {module_count} modules")

    result = sg.generate()
    print_generation_summary(
        build_generation_summary(config, sg.generators, result.files)
    )
    return result


def main(argv: list[str] | None = None):
    try:
        config = build_config(argv)
        run_generate(config)
    except ConfigError as err:
        print(f"Config error [{err.code}]: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err
    except GenerationErrors as err:
        print(f"Error [{err.code}]: {len(err.errors)} failed, {len(err.written)} written")
        for failure in err.errors:
            print(f"  [{failure.code}] {failure}")
        raise SystemExit(1) from err
    except SimplegenError as err:
        print(f"Error [{err.code}]: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err


if __name__ == "__main__":
    # Directive plugins import "simplegen"; run through that module so they
    # share its classes.
    import simplegen

    simplegen.main()
