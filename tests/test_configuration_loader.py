from pathlib import Path

from couponsync.configuration import DATA_DIR_ENV, load_runtime_configuration, resolve_data_dir


def _write_override(data_dir: Path, content: str) -> None:
    cfg_dir = data_dir / "config"
    cfg_dir.mkdir(parents=True, exist_ok=True)
    (cfg_dir / "local.yml").write_text(content)


def test_defaults_loaded_for_empty_data_dir(tmp_path: Path):
    data_dir = tmp_path / "data"
    data_dir.mkdir()

    bundle = load_runtime_configuration(data_dir)

    assert bundle.status == "ready"
    assert bundle.section("sync")["entity_types"] == ["coupon", "membership"]
    assert bundle.section("scheduler")["backoff_base_seconds"] == 300
    assert bundle.section("remote")["timeout"] == 30
    assert bundle.database_path == data_dir / "state" / "couponsync.db"


def test_overrides_merge_over_defaults(tmp_path: Path):
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    _write_override(
        data_dir,
        """
        runtime:
          user_id: user-1
        scheduler:
          interval_minutes: 5
        """,
    )

    bundle = load_runtime_configuration(data_dir)

    assert bundle.status == "ready"
    assert bundle.section("runtime")["user_id"] == "user-1"
    assert bundle.section("scheduler")["interval_minutes"] == 5
    assert bundle.section("scheduler")["backoff_max_seconds"] == 3600


def test_invalid_types_raise_diagnostics(tmp_path: Path):
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    _write_override(
        data_dir,
        """
        scheduler:
          max_workers: yes
        """,
    )

    bundle = load_runtime_configuration(data_dir)

    assert bundle.status == "invalid"
    assert any("max_workers" in diag.message for diag in bundle.diagnostics)
    assert bundle.section("scheduler")["max_workers"] == 4


def test_choices_are_enforced(tmp_path: Path):
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    _write_override(
        data_dir,
        """
        sync:
          conflict_strategy: fastest_wins
          entity_types: [coupon, location]
        """,
    )

    bundle = load_runtime_configuration(data_dir)

    assert bundle.status == "invalid"
    assert bundle.section("sync")["conflict_strategy"] == "newest_wins"
    assert bundle.section("sync")["entity_types"] == ["coupon"]


def test_unknown_keys_warn(tmp_path: Path):
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    _write_override(
        data_dir,
        """
        mystery:
          value: 1
        """,
    )

    bundle = load_runtime_configuration(data_dir)

    assert bundle.status == "ready"
    assert any("Unknown configuration key" in diag.message for diag in bundle.diagnostics)


def test_parse_errors_mark_bundle_invalid(tmp_path: Path):
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    _write_override(data_dir, "runtime: [\n")

    bundle = load_runtime_configuration(data_dir)

    assert bundle.status == "invalid"
    assert any("Failed to parse" in diag.message for diag in bundle.diagnostics)


def test_missing_data_dir_reported(tmp_path: Path):
    bundle = load_runtime_configuration(tmp_path / "absent")

    assert bundle.status == "missing"


def test_resolve_data_dir_reads_environment(tmp_path: Path):
    assert resolve_data_dir({DATA_DIR_ENV: str(tmp_path)}) == tmp_path
    assert resolve_data_dir({}).name == ".couponsync"
