from collections.abc import Callable

import pytest

import microtype_gen

Generate = Callable[..., microtype_gen.Artifact | microtype_gen.ErrorArtifact]
Families = Callable[..., microtype_gen.CapabilityFamilies]

KIND_AND_SECRET_GROUPS = (
    "secret_wrapper",
    "serializable_secret",
    "test_debug",
    "string_ops",
    "int_ops",
    "column_mapping",
)


def _artifact(result: object) -> microtype_gen.Artifact:
    assert isinstance(result, microtype_gen.Artifact), result
    return result


def _all_lines(artifact: microtype_gen.Artifact) -> list[str]:
    return [line for item in artifact.items for line in item.lines]


# ===--- Scenarios ---=== #


def test_secret_string_without_serialization(
    generate_one: Generate, make_families: Families
) -> None:
    families = make_families("secret", "deref_impls")
    artifact = _artifact(generate_one("#[secret] String { Password }", families))

    assert artifact.plan.secret_wrapper is True
    assert artifact.plan.serde_derive is False
    assert artifact.plan.variant == "secret"
    lines = _all_lines(artifact)
    assert "pub struct Password" not in lines
    assert "struct Password(::microtype::secrecy::Secret<__MicrotypeSecretPassword>);" in lines
    assert "struct __MicrotypeSecretPassword(String);" in lines
    # constructor wraps the raw value, exposure unwraps it again
    assert "        Self(::microtype::secrecy::Secret::new(__MicrotypeSecretPassword(inner)))" in lines
    assert "        &::microtype::secrecy::ExposeSecret::expose_secret(&self.0).0" in lines


def test_secret_serialize_without_serialization_is_unsupported(
    generate_one: Generate, make_families: Families
) -> None:
    result = generate_one("#[secret(serialize)] String { Token }", make_families("secret"))
    assert isinstance(result, microtype_gen.ErrorArtifact)
    assert result.kind == "UNSUPPORTED_COMBINATION"
    assert "`#[secret(serialize)]`" in result.message
    assert result.location == microtype_gen.SourceLocation(1, 1)
    assert result.name == "Token"


def test_string_and_int_conflict_yields_error_artifact(generate_one: Generate) -> None:
    result = generate_one("#[string] #[int] String { Bad }")
    assert isinstance(result, microtype_gen.ErrorArtifact)
    assert result.kind == "CONFLICTING_ATTRIBUTE"


def test_two_names_give_independent_normal_plans(
    parse_specs: Callable[[str], list[microtype_gen.MicrotypeSpec]],
) -> None:
    specs = parse_specs("String { A, B }")
    results = microtype_gen.codegen(specs, microtype_gen.CapabilityFamilies())
    assert [r.name for r in results] == ["A", "B"]
    for result in results:
        artifact = _artifact(result)
        assert artifact.plan.core is True
        for group in KIND_AND_SECRET_GROUPS:
            assert getattr(artifact.plan, group) is False


# ===--- Pre-checks ---=== #


def test_secret_with_secret_family_disabled(
    generate_one: Generate, make_families: Families
) -> None:
    result = generate_one("#[secret] String { Password }", make_families("deref_impls"))
    assert isinstance(result, microtype_gen.ErrorArtifact)
    assert result.kind == "UNSUPPORTED_COMBINATION"
    assert result.message == (
        "`#[secret]` is only supported when the `secret` feature is enabled"
    )


def test_serialize_check_runs_before_secret_family_check(
    generate_one: Generate, make_families: Families
) -> None:
    result = generate_one("#[secret(serialize)] String { Token }", make_families())
    assert isinstance(result, microtype_gen.ErrorArtifact)
    assert "has no effect" in result.message


@pytest.mark.parametrize(
    ("source", "location"),
    [
        ("#[diesel(sql_type = BigInt)]\ni64 { Count }", microtype_gen.SourceLocation(1, 1)),
        (
            "#[secret]\n#[diesel(sql_type = Text)]\nString { Key }",
            microtype_gen.SourceLocation(2, 1),
        ),
    ],
)
def test_column_mapping_with_diesel_family_disabled(
    generate_one: Generate,
    make_families: Families,
    source: str,
    location: microtype_gen.SourceLocation,
) -> None:
    result = generate_one(source, make_families("secret", "deref_impls"))
    assert isinstance(result, microtype_gen.ErrorArtifact)
    assert result.kind == "UNSUPPORTED_COMBINATION"
    assert result.message == (
        "`#[diesel]` is only supported when the `diesel` feature is enabled"
    )
    assert result.location == location


def test_secret_int_is_rejected_at_int_marker(generate_one: Generate) -> None:
    result = generate_one("#[secret]\n#[int]\nu64 { Pin }")
    assert isinstance(result, microtype_gen.ErrorArtifact)
    assert result.kind == "UNSUPPORTED_COMBINATION"
    assert result.location == microtype_gen.SourceLocation(2, 1)


# ===--- Plans ---=== #


@pytest.mark.parametrize(
    ("features", "expected_groups"),
    [
        ((), ("core",)),
        (("deref_impls",), ("core", "dereference")),
        (("serde", "deref_impls"), ("core", "serde_derive", "dereference")),
    ],
)
def test_normal_plan_follows_families(
    generate_one: Generate,
    make_families: Families,
    features: tuple[str, ...],
    expected_groups: tuple[str, ...],
) -> None:
    artifact = _artifact(generate_one("String { A }", make_families(*features)))
    assert artifact.plan.groups == expected_groups
    assert set(artifact.groups) == set(expected_groups)


@pytest.mark.parametrize(
    ("source", "features", "expected_groups"),
    [
        ("#[secret] String { P }", ("secret",), ("secret_wrapper", "test_debug")),
        ("#[secret] String { P }", ("secret", "test_debug"), ("secret_wrapper",)),
        (
            "#[secret(serialize)] String { P }",
            ("secret", "serde"),
            ("secret_wrapper", "serde_derive", "serializable_secret", "test_debug"),
        ),
        ("#[secret] String { P }", ("secret", "serde"), ("secret_wrapper", "test_debug")),
        (
            "#[secret] #[string] String { P }",
            ("secret", "deref_impls"),
            ("secret_wrapper", "test_debug", "string_ops"),
        ),
    ],
)
def test_secret_plan_follows_families(
    generate_one: Generate,
    make_families: Families,
    source: str,
    features: tuple[str, ...],
    expected_groups: tuple[str, ...],
) -> None:
    artifact = _artifact(generate_one(source, make_families(*features)))
    assert artifact.plan.groups == expected_groups


def test_kind_and_column_groups_on_normal_plan(
    generate_one: Generate, make_families: Families
) -> None:
    source = "#[int]\n#[diesel(sql_type = BigInt)]\ni64 { Count }"
    artifact = _artifact(generate_one(source, make_families("deref_impls", "diesel")))
    assert artifact.plan.groups == ("core", "dereference", "int_ops", "column_mapping")


def test_plan_is_deterministic(make_families: Families) -> None:
    control = microtype_gen.ControlAttributes(
        secret=microtype_gen.SecretMarker(
            serialize=True, location=microtype_gen.SourceLocation(1, 1)
        ),
        kind=microtype_gen.KindMarker(
            kind=microtype_gen.KIND_STRING, location=microtype_gen.SourceLocation(2, 1)
        ),
    )
    families = make_families("secret", "serde")
    plans = {microtype_gen.plan_capabilities(control, families) for _ in range(5)}
    assert len(plans) == 1


def test_dispatch_output_is_deterministic(generate_one: Generate) -> None:
    source = "#[derive(Debug)]\n#[string]\npub String { Email }"
    assert generate_one(source) == generate_one(source)


# ===--- Secret exposure ---=== #


@pytest.mark.parametrize(
    "features",
    [
        ("secret", "diesel"),
        ("secret", "deref_impls", "diesel"),
        ("secret", "serde", "deref_impls", "test_debug", "diesel"),
    ],
)
def test_secret_artifact_has_no_owning_or_mutable_access(
    generate_one: Generate, make_families: Families, features: tuple[str, ...]
) -> None:
    source = "#[secret(serialize)]\n#[string]\n#[diesel(sql_type = Text)]\nString { Key }"
    if "serde" not in features:
        source = source.replace("#[secret(serialize)]", "#[secret]")
    artifact = _artifact(generate_one(source, make_families(*features)))
    text = "\n".join(_all_lines(artifact))
    for forbidden in ("into_inner", "inner_mut", "Deref", "DerefMut", "AsRef"):
        assert forbidden not in text
    assert "::microtype::Microtype for" not in text
    assert "ExposeSecret<String> for Key" in text
