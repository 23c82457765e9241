import json

import pytest

import cli_calculator as cli
import core_calc as core


def _write_configs(tmp_path, materials=None, pricing=None):
    (tmp_path / "materials.json").write_text(
        json.dumps(materials or {"PLA": {"density_g_cm3": 1.25}, "nylon": {"density_g_cm3": 1.14}}),
        encoding="utf-8",
    )
    (tmp_path / "pricing.json").write_text(
        json.dumps(pricing or {"minimum_charge": 12.5, "delivery": {"rate_per_hour": 30}}),
        encoding="utf-8",
    )


def test_load_materials_json_lowercases_keys(tmp_path):
    _write_configs(tmp_path)
    density = core.load_materials_json(str(tmp_path / "materials.json"))
    assert density == {"pla": 1.25, "nylon": 1.14}


@pytest.mark.parametrize(
    "payload,match",
    [
        ([], "expected object"),
        ({}, "expected object"),
        ({"pla": 1.24}, "invalid row"),
        ({"pla": {"price": 3}}, "missing density_g_cm3"),
        ({"pla": {"density_g_cm3": 0}}, "must be > 0"),
    ],
)
def test_load_materials_json_validation(tmp_path, payload, match):
    path = tmp_path / "materials.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    with pytest.raises(ValueError, match=match):
        core.load_materials_json(str(path))


def test_load_pricing_json_merges_over_base_and_override(tmp_path):
    _write_configs(tmp_path)
    pricing = core.load_pricing_json(
        str(tmp_path / "pricing.json"),
        base=core.DEFAULT_PRICING,
        override={"delivery": {"minimum_fee": 0}},
    )
    assert pricing["minimum_charge"] == 12.5
    assert pricing["base_rate_per_hour"] == 15.0
    assert pricing["delivery"] == {"avg_speed_kmh": 40.0, "rate_per_hour": 30, "minimum_fee": 0}
    # база не мутируется
    assert core.DEFAULT_PRICING["delivery"]["rate_per_hour"] == 25.0


def test_missing_config_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        core.load_pricing_json(str(tmp_path / "pricing.json"))
    with pytest.raises(FileNotFoundError):
        core.load_materials_json(str(tmp_path / "materials.json"))


def test_bundled_configs_match_defaults():
    density = core.load_materials_json(core.get_default_materials_path())
    pricing = core.load_pricing_json(core.get_default_pricing_path())
    assert density == core.DEFAULT_MATERIALS_DENSITY
    assert pricing == core.DEFAULT_PRICING


def test_cli_and_core_config_loading_match(tmp_path):
    _write_configs(tmp_path)
    core_density = core.load_materials_json(str(tmp_path / "materials.json"))
    core_pricing = core.load_pricing_json(str(tmp_path / "pricing.json"), base=core.DEFAULT_PRICING)

    cli_density, cli_pricing, materials_path, pricing_path = cli.load_configs_via_core(str(tmp_path))

    assert cli_density == core_density
    assert cli_pricing == core_pricing
    assert materials_path == str(tmp_path / "materials.json")
    assert pricing_path == str(tmp_path / "pricing.json")


def test_cli_config_errors_are_config_errors(tmp_path):
    with pytest.raises(cli.ConfigError, match="not found"):
        cli.load_configs_via_core(str(tmp_path))

    (tmp_path / "materials.json").write_text("{not json", encoding="utf-8")
    (tmp_path / "pricing.json").write_text("{}", encoding="utf-8")
    with pytest.raises(cli.ConfigError, match="materials.json: JSON error"):
        cli.load_configs_via_core(str(tmp_path))


def test_parse_kv_override():
    out = cli.parse_kv_override(["delivery.rate_per_hour=30", "minimum_charge=12.5", "currency=USD", "flag=true"])
    assert out == {"delivery": {"rate_per_hour": 30}, "minimum_charge": 12.5, "currency": "USD", "flag": True}
    with pytest.raises(ValueError, match="expected key=val"):
        cli.parse_kv_override(["no_equals_sign"])


def test_finalize_json_payload_with_errors():
    payload = {"success": True, "count": 2, "per_object": [{"file": "ok.stl"}], "summary": None}
    errors = [{"file": "bad.stl", "kind": "InvalidFormat", "error": "boom"}]

    out = cli.finalize_json_payload(payload, errors, count_ok=1)

    assert out["success"] is False
    assert out["count_failed"] == 1
    assert out["count_ok"] == 1
    assert out["errors"][0]["file"] == "bad.stl"
    assert out["errors"][0]["error"] == "boom"
