import json

import httpx
import pytest
from click.testing import CliRunner
from fastapi.testclient import TestClient

from cloudprnt_queue.api import create_app
from cloudprnt_queue.cli import cli
from cloudprnt_queue.encoding.escpos import Commands


ITEMS = [
    {"name": "Fish and chips", "quantity": 2, "unit_price": 1250, "category_name": "Mains"},
    {"name": "Tomato soup", "quantity": 1, "unit_price": 600, "category_name": "Starters"},
]

CONFIG = """
log_level: WARNING
printers:
  - id: kitchen-1
    display_name: Kitchen
    paper_width: 42
  - id: bar-1
    display_name: Bar
    active: false
"""


@pytest.fixture()
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch):
    for key in ("CLOUDPRNT_DATABASE_URL", "CLOUDPRNT_LOG_LEVEL", "CLOUDPRNT_CLOUDPRNT_ENABLED"):
        monkeypatch.delenv(key, raising=False)


def _write_items(path="items.json", items=ITEMS):
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(items, handle)
    return path


def test_render_writes_raw_escpos_to_stdout(runner):
    with runner.isolated_filesystem():
        items_file = _write_items()
        result = runner.invoke(cli, ["receipt", "render", items_file, "--order", "A-9"])

    assert result.exit_code == 0, result.output
    assert result.stdout_bytes.startswith(Commands.INIT)
    assert result.stdout_bytes.endswith(Commands.CUT)
    assert b"A-9" in result.stdout_bytes
    assert b"$31.00" in result.stdout_bytes


def test_render_kitchen_hex(runner):
    with runner.isolated_filesystem():
        items_file = _write_items()
        result = runner.invoke(cli, ["receipt", "render", items_file, "--kind", "kitchen", "--hex"])

    assert result.exit_code == 0, result.output
    assert result.output.startswith("1b 40")
    assert bytes.fromhex(result.output.strip()).startswith(Commands.INIT)


def test_render_to_file_accepts_items_object(runner):
    with runner.isolated_filesystem():
        items_file = _write_items(items={"items": ITEMS})
        result = runner.invoke(cli, ["receipt", "render", items_file, "--width", "32", "-o", "out.bin"])
        with open("out.bin", "rb") as handle:
            data = handle.read()

    assert result.exit_code == 0, result.output
    assert f"Wrote {len(data)} bytes to out.bin" in result.output
    assert b"-" * 32 in data


def test_render_rejects_invalid_json(runner):
    with runner.isolated_filesystem():
        with open("broken.json", "w") as handle:
            handle.write("{nope")
        result = runner.invoke(cli, ["receipt", "render", "broken.json"])

    assert result.exit_code == 2
    assert "invalid JSON" in result.output


def test_test_receipt(runner):
    result = runner.invoke(cli, ["receipt", "test", "--width", "32"])

    assert result.exit_code == 0, result.output
    assert result.stdout_bytes.startswith(Commands.INIT)
    assert b"PRINTER TEST" in result.stdout_bytes


def test_printers_list_from_config(runner):
    with runner.isolated_filesystem():
        with open("config.yaml", "w") as handle:
            handle.write(CONFIG)
        result = runner.invoke(cli, ["--config", "config.yaml", "printers", "list"])

    assert result.exit_code == 0, result.output
    assert "kitchen-1" in result.output
    assert "bar-1" in result.output
    assert "Never" in result.output


def test_printers_list_without_printers(runner):
    result = runner.invoke(cli, ["printers", "list"])

    assert result.exit_code == 0
    assert "No printers configured" in result.output


def test_invalid_config_is_reported(runner):
    with runner.isolated_filesystem():
        with open("config.yaml", "w") as handle:
            handle.write("backoff_strategy: random\n")
        result = runner.invoke(cli, ["--config", "config.yaml", "printers", "list"])

    assert result.exit_code == 1
    assert "backoff_strategy" in result.output


@pytest.mark.parametrize("args", [
    ["job", "list"],
    ["job", "cancel", "job-1"],
    ["job", "sweep"],
    ["job", "failures"],
])
def test_job_commands_need_a_database(runner, args):
    result = runner.invoke(cli, args)

    assert result.exit_code == 1
    assert "need a database" in result.output


def test_printers_simulate_runs_one_poll_cycle(runner, orchestrator, monkeypatch):
    app = create_app(orchestrator)
    with TestClient(app) as client:
        job_id = client.post("/jobs", json={
            "printerId": "kitchen-1", "idempotencyKey": "order-5", "payload": "2x soup"
        }).json()["jobId"]

    monkeypatch.setattr(httpx, "Client", lambda **kwargs: TestClient(app))
    with runner.isolated_filesystem():
        result = runner.invoke(cli, ["printers", "simulate", "kitchen-1",
                                     "--url", "http://testserver", "-o", "job.bin"])
        with open("job.bin", "rb") as handle:
            data = handle.read()

    assert result.exit_code == 0, result.output
    assert f"Received job {job_id}" in result.output
    assert "Confirmed: PRINTED" in result.output
    assert data == b"2x soup"
