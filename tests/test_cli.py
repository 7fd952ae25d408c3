from __future__ import annotations

import argparse
import textwrap
import uuid
from collections.abc import Callable
from dataclasses import FrozenInstanceError
from pathlib import Path

import pytest

import simplegen

REGISTRY_SOURCE = '''
import simplegen

TEMPLATE = """
{% for spec in specs %}
{{ spec.name | upper }} = {{ spec.name | tags_literal }}
{% endfor %}
"""


def names(sg, package, declaration, annotation):
    if declaration.name == "Broken":
        raise RuntimeError("broken on purpose")
    return {"name": declaration.name}, []


GENERATORS = {"names": simplegen.TemplateGenerator(template=TEMPLATE, generator=names)}
HELPERS = {"shout": str.upper}
'''


def _assert_config_code(exc_info: pytest.ExceptionInfo[Exception], code: str) -> None:
    err = exc_info.value
    assert getattr(err, "code") == code
    assert getattr(err, "code") in simplegen.VALID_ERROR_CODES


def _args(**overrides: object) -> argparse.Namespace:
    base_args: dict[str, object] = {
        "packages": ["app"],
        "generators": "registry:GENERATORS",
        "template_functions": None,
        "root": None,
    }
    base_args.update(overrides)
    return argparse.Namespace(**base_args)


@pytest.fixture
def project(write_tree: Callable[[dict[str, str]], Path]) -> tuple[Path, str]:
    """Source tree with one marked class and a uniquely named registry module."""
    module_name = f"registry_{uuid.uuid4().hex}"
    root = write_tree(
        {
            "app/__init__.py": "# simplegen:names\nclass User:\n    pass\n",
            "broken/__init__.py": "# simplegen:names\nclass Broken:\n    pass\n",
            f"{module_name}.py": REGISTRY_SOURCE,
        }
    )
    return root, module_name


def test_import_simplegen_module_smoke() -> None:
    assert callable(simplegen.main)


def test_build_argument_parser_exposes_options_and_defaults() -> None:
    parser = simplegen.build_argument_parser()
    option_actions = {
        option: action for action in parser._actions for option in action.option_strings
    }

    assert {"--package", "--generators", "--template-functions", "--root"}.issubset(
        option_actions.keys()
    )
    assert option_actions["--package"].default is None
    assert option_actions["--root"].default is None


def test_parse_args_collects_repeated_packages_in_order() -> None:
    args = simplegen.parse_args(
        ["--package", "b.models", "--package", "a.models", "--generators", "x:Y"]
    )

    assert args.packages == ["b.models", "a.models"]
    assert args.generators == "x:Y"
    assert args.template_functions is None


def test_parse_args_unknown_flag_exits_with_code_2() -> None:
    with pytest.raises(SystemExit) as exc_info:
        simplegen.parse_args(["--not-a-flag"])

    assert exc_info.value.code == 2


def test_validate_config_returns_frozen_generate_config(tmp_path: Path) -> None:
    args = _args(
        packages=["app", "lib.models", "app"],
        template_functions="registry:HELPERS",
        root=tmp_path,
    )

    config = simplegen.validate_config(args)

    assert config == simplegen.GenerateConfig(
        packages=("app", "lib.models"),
        generators="registry:GENERATORS",
        template_functions="registry:HELPERS",
        root=tmp_path,
    )
    with pytest.raises(FrozenInstanceError):
        config.root = Path(".")  # type: ignore[misc]


def test_validate_config_root_defaults_to_cwd(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)

    config = simplegen.validate_config(_args())

    assert config.root.resolve() == tmp_path.resolve()


@pytest.mark.parametrize(
    ("overrides", "code"),
    [
        ({"packages": None}, "MISSING_PACKAGE"),
        ({"packages": []}, "MISSING_PACKAGE"),
        ({"packages": ["my-project.models"]}, "INVALID_PACKAGE_NAME"),
        ({"packages": ["app", "1models"]}, "INVALID_PACKAGE_NAME"),
        ({"generators": None}, "INVALID_OBJECT_REF"),
        ({"generators": "registry.GENERATORS"}, "INVALID_OBJECT_REF"),
        ({"template_functions": "registry:"}, "INVALID_OBJECT_REF"),
    ],
)
def test_validate_config_rejects_bad_arguments(
    tmp_path: Path, overrides: dict[str, object], code: str
) -> None:
    with pytest.raises(simplegen.ConfigError) as exc_info:
        simplegen.validate_config(_args(root=tmp_path, **overrides))

    _assert_config_code(exc_info, code)


def test_validate_path_exists_raises_path_not_found(tmp_path: Path) -> None:
    missing = tmp_path / "does-not-exist"

    with pytest.raises(simplegen.ConfigError) as exc_info:
        simplegen.validate_config(_args(root=missing))

    _assert_config_code(exc_info, "PATH_NOT_FOUND")
    assert "--root" in exc_info.value.message
    assert str(missing) in exc_info.value.message


def test_config_error_rejects_unknown_code() -> None:
    with pytest.raises(ValueError):
        simplegen.ConfigError("NOT_A_CODE", "message")


def test_load_object_imports_module_attribute_from_root(project: tuple[Path, str]) -> None:
    root, module_name = project

    generators = simplegen.load_object(f"{module_name}:GENERATORS", root)

    assert list(generators) == ["names"]
    assert isinstance(generators["names"], simplegen.TemplateGenerator)


@pytest.mark.parametrize("ref", ["no_such_module_anywhere:X", "{module}:MISSING"])
def test_load_object_reports_object_not_found(project: tuple[Path, str], ref: str) -> None:
    root, module_name = project

    with pytest.raises(simplegen.ConfigError) as exc_info:
        simplegen.load_object(ref.format(module=module_name), root)

    _assert_config_code(exc_info, "OBJECT_NOT_FOUND")


def test_main_config_error_prints_hint_and_exits_1(
    capsys: pytest.CaptureFixture[str],
) -> None:
    with pytest.raises(SystemExit) as exc_info:
        simplegen.main(["--generators", "registry:GENERATORS"])

    assert exc_info.value.code == 1
    out = capsys.readouterr().out
    assert "Config error [MISSING_PACKAGE]" in out
    assert "Hint:" in out


def test_main_generates_files_and_prints_summary(
    project: tuple[Path, str], capsys: pytest.CaptureFixture[str]
) -> None:
    root, module_name = project

    simplegen.main(
        [
            "--root",
            str(root),
            "--package",
            "app",
            "--generators",
            f"{module_name}:GENERATORS",
            "--template-functions",
            f"{module_name}:HELPERS",
        ]
    )

    out = capsys.readouterr().out
    assert "Loading: app" in out
    assert "Loaded: 1 packages, 1 modules" in out
    assert "simplegen output:" in out
    assert "app/names_gen.py" in out
    assert "Total:" in out
    assert (root / "app" / "names_gen.py").is_file()


def test_main_generation_failure_lists_errors_and_exits_1(
    project: tuple[Path, str], capsys: pytest.CaptureFixture[str]
) -> None:
    root, module_name = project

    with pytest.raises(SystemExit) as exc_info:
        simplegen.main(
            [
                "--root",
                str(root),
                "--package",
                "app",
                "--package",
                "broken",
                "--generators",
                f"{module_name}:GENERATORS",
            ]
        )

    assert exc_info.value.code == 1
    out = capsys.readouterr().out
    assert "Error [GENERATION_FAILED]: 1 failed, 1 written" in out
    assert "[GENERATOR_ERROR] names: broken.Broken: broken on purpose" in out
    assert (root / "app" / "names_gen.py").is_file()


def test_main_load_error_exits_1(
    project: tuple[Path, str], capsys: pytest.CaptureFixture[str]
) -> None:
    root, module_name = project

    with pytest.raises(SystemExit) as exc_info:
        simplegen.main(
            [
                "--root",
                str(root),
                "--package",
                "missing",
                "--generators",
                f"{module_name}:GENERATORS",
            ]
        )

    assert exc_info.value.code == 1
    out = capsys.readouterr().out
    assert "Error [LOAD_ERROR]: Cannot find package missing" in out
    assert "Hint:" in out


def test_format_generation_summary_contract() -> None:
    root = Path("/work")
    summary = simplegen.GenerationSummary(
        root=root,
        packages=("app", "lib"),
        directives=("names", "more"),
        files=(
            simplegen.FileWriteResult(
                filename="names_gen.py",
                path=root / "app" / "names_gen.py",
                line_count=1234,
                byte_count=9000,
            ),
            simplegen.FileWriteResult(
                filename="more_gen.py",
                path=root / "lib" / "more_gen.py",
                line_count=7,
                byte_count=70,
            ),
        ),
    )

    text = simplegen.format_generation_summary(summary)

    assert text == textwrap.dedent(
        """\
        simplegen output:

          Root:        /work
          Packages:    app, lib
          Directives:  names, more

          Files written:
            app/names_gen.py   1,234 lines
            lib/more_gen.py        7 lines

          Total: 1,241 lines across 2 files
        """
    )


def test_format_generation_summary_without_files() -> None:
    summary = simplegen.GenerationSummary(
        root=Path("/work"), packages=("app",), directives=("names",), files=()
    )

    text = simplegen.format_generation_summary(summary)

    assert "Files written" not in text
    assert text.endswith("  Total: 0 lines across 0 files\n")
