"""Tests for the command-line entry point (no API key → degrade mode)."""

from __future__ import annotations

import json

import pytest
from factories import ESTIMATE, FLYER, make_facts

import main
from estimate_auditor.diagnosis import diagnose


def _write(tmp_path, name: str, payload: bytes = b"\xff\xd8fake") -> str:
    path = tmp_path / name
    path.write_bytes(payload)
    return str(path)


class TestLoadImages:
    def test_mime_type_guessed_from_name(self, tmp_path):
        images = main.load_images([_write(tmp_path, "p1.png"), _write(tmp_path, "p2.jpg")])
        assert [i.mime_type for i in images] == ["image/png", "image/jpeg"]

    def test_unknown_extension_defaults_to_jpeg(self, tmp_path):
        images = main.load_images([_write(tmp_path, "scan.bin")])
        assert images[0].mime_type == "image/jpeg"

    def test_empty_file_is_skipped(self, tmp_path):
        images = main.load_images([_write(tmp_path, "blank.jpg", b""), _write(tmp_path, "p1.png")])
        assert [i.mime_type for i in images] == ["image/png"]


class TestExitCode:
    def test_fair_estimate_exits_zero(self):
        result = diagnose(make_facts(FLYER), make_facts(ESTIMATE, cleaning_fee=(33000, "クリーニング 33,000円")))
        assert main.exit_code_for(result) == 0

    def test_cuttable_item_exits_one(self):
        result = diagnose(make_facts(FLYER), make_facts(ESTIMATE, support_service=(15000, "サポート 15,000円")))
        assert main.exit_code_for(result) == 1
        assert main.print_report(result) == 1


class TestMain:
    def test_json_output_in_degrade_mode(self, tmp_path, capsys):
        estimate = _write(tmp_path, "estimate.jpg")

        with pytest.raises(SystemExit) as exc_info:
            main.main(["--estimate", estimate, "--json"])

        assert exc_info.value.code == 0
        data = json.loads(capsys.readouterr().out)
        assert data["property_name"] == "不明"
        assert data["items"] == []

    def test_missing_file_exits_two(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main.main(["--estimate", str(tmp_path / "missing.jpg")])
        assert exc_info.value.code == 2

    def test_empty_estimate_exits_two(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main.main(["--estimate", _write(tmp_path, "blank.jpg", b"")])
        assert exc_info.value.code == 2

    def test_estimate_is_required(self):
        with pytest.raises(SystemExit) as exc_info:
            main.main(["--flyer", "flyer.jpg"])
        assert exc_info.value.code == 2
