import argparse
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

GENERATOR_DIR = Path(__file__).resolve().parent.parent
if str(GENERATOR_DIR) not in sys.path:
    sys.path.insert(0, str(GENERATOR_DIR))

import microtype_gen  # noqa: E402


@pytest.fixture
def declaration_file(tmp_path: Path) -> Path:
    path = tmp_path / "types.microtype"
    path.write_text("String { Email }\n", encoding="utf-8")
    return path


@pytest.fixture
def make_args(declaration_file: Path) -> Callable[..., argparse.Namespace]:
    def _make_args(**overrides: object) -> argparse.Namespace:
        base_args: dict[str, object] = {
            "input": declaration_file,
            "output": None,
            "features": None,
            "all_features": False,
            "no_default_features": False,
            "keep_going": False,
            "plan": False,
            "list_features": False,
        }
        base_args.update(overrides)
        return argparse.Namespace(**base_args)

    return _make_args


@pytest.fixture
def make_families() -> Callable[..., microtype_gen.CapabilityFamilies]:
    def _make_families(*features: str) -> microtype_gen.CapabilityFamilies:
        return microtype_gen.CapabilityFamilies.from_features(frozenset(features))

    return _make_families


@pytest.fixture
def parse_specs() -> Callable[[str], list[microtype_gen.MicrotypeSpec]]:
    def _parse_specs(source: str) -> list[microtype_gen.MicrotypeSpec]:
        return microtype_gen.flatten(microtype_gen.parse_declarations(source))

    return _parse_specs


@pytest.fixture
def generate_one(
    parse_specs: Callable[[str], list[microtype_gen.MicrotypeSpec]],
) -> Callable[..., microtype_gen.Artifact | microtype_gen.ErrorArtifact]:
    def _generate_one(
        source: str, families: microtype_gen.CapabilityFamilies | None = None
    ) -> microtype_gen.Artifact | microtype_gen.ErrorArtifact:
        specs = parse_specs(source)
        assert len(specs) == 1
        return microtype_gen.generate_single(
            specs[0], families or microtype_gen.CapabilityFamilies()
        )

    return _generate_one
