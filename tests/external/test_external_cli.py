from __future__ import annotations

from pathlib import Path
import subprocess
import sys


def _tool_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _fixture(name: str) -> Path:
    return (_tool_root() / "tests" / "fixtures" / name).resolve()


def _run(args: list[str], cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    run_cwd = _tool_root() if cwd is None else cwd
    return subprocess.run(
        [sys.executable, "microtype_gen.py", *args],
        cwd=run_cwd,
        capture_output=True,
        text=True,
        check=False,
    )


def test_t_01_generate_with_serde_writes_every_microtype(tmp_path: Path) -> None:
    output = tmp_path / "types.rs"

    result = _run(
        [str(_fixture("types.microtype")), "-o", str(output), "--features", "serde,diesel"]
    )

    assert result.returncode == 0, result.stderr
    assert "Microtypes generated:" in result.stdout
    content = output.read_text(encoding="utf-8")
    assert content.startswith("// x---")
    assert "// | Features: deref_impls, diesel, secret, serde" in content
    for declaration in (
        "pub struct Email(pub String);",
        "pub struct Username(pub String);",
        "pub(crate) struct UserId(pub u64);",
        "pub(crate) struct AccountId(pub u64);",
        "pub struct Password(::microtype::secrecy::Secret<__MicrotypeSecretPassword>);",
        "pub struct ApiToken(::microtype::secrecy::Secret<__MicrotypeSecretApiToken>);",
        "struct Payload(pub Vec<u8>);",
    ):
        assert declaration in content
    assert content.index("struct Email(") < content.index("struct Payload(")
    assert "/// Primary contact address." in content
    assert (
        "impl<B> ::diesel::serialize::ToSql<::diesel::sql_types::BigInt, B> for AccountId"
        in content
    )


def test_t_02_default_features_reject_secret_serialize(tmp_path: Path) -> None:
    output = tmp_path / "types.rs"

    result = _run([str(_fixture("types.microtype")), "-o", str(output)])

    assert result.returncode == 1
    assert "error[UNSUPPORTED_COMBINATION]" in result.stderr
    assert "(in `ApiToken`)" in result.stderr
    assert "(in `Password`)" not in result.stderr
    assert not output.exists()


def test_t_03_default_output_path_sits_next_to_input(tmp_path: Path) -> None:
    source = tmp_path / "ids.microtype"
    source.write_text("#[int]\npub u32 { OrderId }\n", encoding="utf-8")

    result = _run([str(source)])

    assert result.returncode == 0, result.stderr
    assert "impl ::core::ops::AddAssign for OrderId {" in (tmp_path / "ids.rs").read_text(
        encoding="utf-8"
    )


def test_t_04_collects_every_error(tmp_path: Path) -> None:
    result = _run([str(_fixture("conflicting.microtype")), "-o", str(tmp_path / "x.rs")])

    assert result.returncode == 1
    assert "error[CONFLICTING_ATTRIBUTE]" in result.stderr
    assert "error[DUPLICATE_ATTRIBUTE]" in result.stderr
    assert "2 error(s)" in result.stdout


def test_t_05_keep_going_embeds_compile_errors(tmp_path: Path) -> None:
    output = tmp_path / "x.rs"

    result = _run(
        [str(_fixture("conflicting.microtype")), "-o", str(output), "--keep-going"]
    )

    assert result.returncode == 0, result.stderr
    content = output.read_text(encoding="utf-8")
    assert content.count("::core::compile_error!(") == 2
    assert "struct Fine(pub String);" in content


def test_t_06_grammar_error_reports_location(tmp_path: Path) -> None:
    fixture = _fixture("grammar_error.microtype")

    result = _run([str(fixture), "-o", str(tmp_path / "x.rs")])

    assert result.returncode == 1
    assert f"{fixture}:1:16: error[GRAMMAR]" in result.stderr


def test_t_07_plan_is_read_only(tmp_path: Path) -> None:
    result = _run([str(_fixture("types.microtype")), "--plan", "--all-features"])

    assert result.returncode == 0, result.stderr
    assert "Capability plan for types.microtype (7 microtypes):" in result.stdout
    assert "serializable_secret" in result.stdout
    assert not (_tool_root() / "tests" / "fixtures" / "types.rs").exists()


def test_t_08_list_features_needs_no_input() -> None:
    result = _run(["--list-features", "--no-default-features"])

    assert result.returncode == 0
    assert "Features:" in result.stdout
    assert "test_friendly_debug" in result.stdout


def test_t_09_unknown_flag_returns_argparse_usage_code() -> None:
    result = _run(["--not-a-flag"])

    assert result.returncode == 2


def test_t_10_unknown_feature_is_a_config_error(tmp_path: Path) -> None:
    result = _run([str(_fixture("types.microtype")), "--features", "turbo"])

    assert result.returncode == 1
    assert "Config error [UNKNOWN_FEATURE]" in result.stdout


def test_t_11_generate_is_deterministic(tmp_path: Path) -> None:
    first = tmp_path / "first.rs"
    second = tmp_path / "second.rs"
    fixture = str(_fixture("types.microtype"))

    _run([fixture, "-o", str(first), "--all-features"])
    _run([fixture, "-o", str(second), "--all-features"])

    assert first.read_bytes() == second.read_bytes()
