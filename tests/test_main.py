"""Tests for the command-line entry point."""

from __future__ import annotations

import json
import uuid

from odonto.main import main


def _write(tmp_path, payload) -> str:
    path = tmp_path / "payload.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return str(path)


class TestValidateCommand:
    def test_valid_cementation_payload_exits_zero(self, tmp_path, capsys):
        path = _write(
            tmp_path,
            {"evaluationId": str(uuid.uuid4()), "teeth": ["11", "21"], "shade": "a1", "substrate": "Esmalte"},
        )

        assert main(["validate", path, "--kind", "cementation"]) == 0
        out = json.loads(capsys.readouterr().out)
        assert out["success"] is True

    def test_invalid_payload_exits_one(self, tmp_path, capsys):
        path = _write(
            tmp_path,
            {"evaluationId": str(uuid.uuid4()), "teeth": ["99"], "shade": "A1", "substrate": "Esmalte"},
        )

        assert main(["validate", path, "--kind", "cementation"]) == 1
        out = json.loads(capsys.readouterr().out)
        assert out["success"] is False
        assert out["error"] == "Número de dente inválido: 99"

    def test_unreadable_file_exits_two(self, tmp_path, capsys):
        assert main(["validate", str(tmp_path / "missing.json")]) == 2
        assert "Cannot read" in capsys.readouterr().err
