from __future__ import annotations

from pathlib import Path


_README_ANCHORS = (
    # One-line summary
    "Generate Rust microtype wrapper types",
    # Declaration syntax
    "#[secret]",
    "#[secret(serialize)]",
    "#[string]",
    "#[int]",
    "#[diesel(sql_type = ",
    # Quick start
    "microtype_gen.py",
    "--output",
    "--features",
    "--keep-going",
    # Discovery
    "--plan",
    "--list-features",
    # Feature table
    "deref_impls",
    "diesel",
    "serde",
    "test_debug",
    # Testing instructions
    "pytest",
)


def _tool_root() -> Path:
    return Path(__file__).resolve().parents[2]


def test_t_25_required_artifacts_exist() -> None:
    tool_root = _tool_root()
    required_paths = {
        "microtype_gen.py",
        "pyproject.toml",
        "README.md",
        "tests/conftest.py",
        "tests/test_cli.py",
        "tests/test_parser.py",
        "tests/test_flatten.py",
        "tests/test_validator.py",
        "tests/test_dispatch.py",
        "tests/test_emit.py",
        "tests/test_writer.py",
        "tests/test_summary.py",
        "tests/fixtures/types.microtype",
        "tests/fixtures/conflicting.microtype",
        "tests/fixtures/grammar_error.microtype",
        "tests/external/test_external_cli.py",
        "tests/external/test_repo_shape.py",
    }

    missing = sorted(path for path in required_paths if not (tool_root / path).exists())
    assert missing == []


def test_t_26_no_generated_output_is_checked_in() -> None:
    tool_root = _tool_root()
    assert list((tool_root / "tests" / "fixtures").glob("*.rs")) == []


def test_t_27_readme_includes_required_sections() -> None:
    readme = _tool_root() / "README.md"
    assert readme.exists(), "README.md must exist"
    content = readme.read_text(encoding="utf-8")
    missing = [anchor for anchor in _README_ANCHORS if anchor not in content]
    assert missing == [], f"README.md missing required anchors: {missing}"
