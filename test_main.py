"""
test_main.py - CLI tests with a scripted OCR engine.

Usage: python test_main.py
"""

from __future__ import annotations

import json
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest

import main as cli
from config import Settings
from conftest import FIXED_TODAY, FakeProvider, make_image, make_registry
from models import ProviderName
from pipeline import ReceiptPipeline

RECEIPT_TEXT = "TARGET\nDate: 05/20/2024\nShampoo 5.49\nSoap 2.99\nTOTAL $8.48"


@pytest.fixture
def fake_engine(monkeypatch):
    local = FakeProvider(ProviderName.LOCAL, text=RECEIPT_TEXT)

    def build(settings=None, image_store=None):
        return ReceiptPipeline(
            settings=Settings(),
            registry=make_registry(ProviderName.LOCAL),
            providers={ProviderName.LOCAL: local},
            image_store=image_store,
            today=lambda: FIXED_TODAY,
        )

    monkeypatch.setattr(cli, "ReceiptPipeline", build)
    monkeypatch.setattr(cli, "load_settings", Settings)
    monkeypatch.setattr(cli, "setup_logging", lambda **kwargs: None)
    return local


def test_single_image_text_output(tmp_path, fake_engine, capsys):
    image = tmp_path / "receipt.png"
    image.write_bytes(make_image())

    cli.main(["--image", str(image)])

    out = capsys.readouterr().out
    assert "Merchant:     Target" in out
    assert "Total:        $8.48" in out
    assert fake_engine.calls == 1


def test_single_image_json_output(tmp_path, fake_engine, capsys):
    image = tmp_path / "receipt.png"
    image.write_bytes(make_image())

    cli.main(["--image", str(image), "--json", "--quality-hint", "fast", "--budget", "0"])

    payload = json.loads(capsys.readouterr().out)
    assert payload["merchant_name"] == "Target"
    assert payload["total_amount"] == 8.48
    assert payload["metadata"]["image_ref"] == "receipt.png"


def test_missing_image_exits_with_error(tmp_path, fake_engine, capsys):
    with pytest.raises(SystemExit) as exited:
        cli.main(["--image", str(tmp_path / "nope.png"), "--json"])

    assert exited.value.code == 1
    payload = json.loads(capsys.readouterr().out)
    assert payload["error"]["kind"] == "InputError"
    assert payload["error"]["details"]["code"] == "IMAGE_NOT_FOUND"


def test_ref_requires_store(fake_engine):
    with pytest.raises(SystemExit) as exited:
        cli.main(["--ref", "r1.png"])
    assert exited.value.code == 2


def test_reprocess_from_store(tmp_path, fake_engine, capsys):
    (tmp_path / "r1.png").write_bytes(make_image())

    cli.main(["--ref", "r1.png", "--store", str(tmp_path), "--json"])

    payload = json.loads(capsys.readouterr().out)
    assert payload["metadata"]["reprocessed"] is True


def test_batch_summary_and_failures(tmp_path, fake_engine, capsys):
    (tmp_path / "a.png").write_bytes(make_image())
    (tmp_path / "b.jpg").write_bytes(make_image(image_format="JPEG"))
    (tmp_path / "notes.txt").write_text("not a receipt")

    cli.main(["--batch", str(tmp_path)])
    out = capsys.readouterr().out
    assert "SUMMARY - 2 receipt(s) processed" in out
    assert fake_engine.calls == 2

    (tmp_path / "empty.png").write_bytes(b"")
    with pytest.raises(SystemExit) as exited:
        cli.main(["--batch", str(tmp_path)])
    assert exited.value.code == 1
    assert "InputError" in capsys.readouterr().out


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-q"]))
