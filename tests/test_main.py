"""Tests for invoice_reminders.main -- the command line interface.

Runs main(argv) end to end against a tmp SQLite database and the .eml
outbox transport, so nothing leaves the machine.
"""

import json

import pytest
import yaml

from invoice_reminders.main import main, parse_overrides

CSV = (
    "Invoice #,Customer,Email,Amount Due,Due Date\n"
    "INV-1001,Acme Corp,ap@acme.test,1250,2026-01-01\n"
    "INV-1002,Bluehill,billing@bluehill.test,300,2026-01-08\n"
)


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.safe_dump({
        "dispatch": {"transport": "outbox", "max_workers": 2},
        "storage": {"outbox_dir": str(tmp_path / "outbox")},
        "sender": {"from_email": "billing@northwind.test", "company_name": "Northwind"},
    }), encoding="utf-8")
    csv_path = tmp_path / "invoices.csv"
    csv_path.write_text(CSV, encoding="utf-8")

    base = ["--config", str(config_path), "--db", str(tmp_path / "reminders.db"), "--today", "2026-01-10"]

    def _run(*args):
        return main(base + list(args))

    _run.tmp_path = tmp_path
    _run.csv_path = csv_path
    return _run


class TestParseOverrides:

    def test_number_mapped_to_id(self):
        overrides = parse_overrides(
            ["INV-1:po_number=PO-7", "INV-1:ref=a=b", "raw-id:x="],
            {"INV-1": "id-1"},
        )
        assert overrides == {"id-1": {"po_number": "PO-7", "ref": "a=b"}, "raw-id": {"x": ""}}

    @pytest.mark.parametrize("raw", ["po_number=PO-7", "INV-1:po_number", ":k=v", "INV-1:=v"])
    def test_malformed(self, raw):
        with pytest.raises(ValueError, match="INVOICE:KEY=VALUE"):
            parse_overrides([raw], {})


class TestCommands:

    def test_import(self, workspace, capsys):
        assert workspace("import", str(workspace.csv_path)) == 0
        assert "Imported 2 invoices" in capsys.readouterr().out

    def test_import_missing_file(self, workspace):
        assert workspace("import", str(workspace.tmp_path / "nope.csv")) == 1

    def test_preview_json(self, workspace, capsys):
        workspace("import", str(workspace.csv_path))
        capsys.readouterr()

        assert workspace("--json", "preview") == 0
        report = json.loads(capsys.readouterr().out)
        assert [o["invoice_number"] for o in report["ready"]] == ["INV-1001"]
        assert [o["invoice_number"] for o in report["ineligible"]] == ["INV-1002"]

    def test_run_writes_outbox_once(self, workspace, capsys):
        workspace("import", str(workspace.csv_path))
        capsys.readouterr()

        assert workspace("--json", "run") == 0
        first = json.loads(capsys.readouterr().out)
        assert (first["sent"], first["failed"], first["skipped"]) == (1, 0, 1)

        assert workspace("--json", "run") == 0
        second = json.loads(capsys.readouterr().out)
        assert second["sent"] == 0
        assert len(list((workspace.tmp_path / "outbox").glob("*.eml"))) == 1

    def test_send_by_number_and_history(self, workspace, capsys):
        workspace("import", str(workspace.csv_path))
        assert workspace("send", "INV-1001") == 0
        capsys.readouterr()

        assert workspace("--json", "history") == 0
        [row] = json.loads(capsys.readouterr().out)
        assert row["invoice_number"] == "INV-1001"
        assert row["status"] == "sent"

    def test_send_unknown_invoice(self, workspace):
        assert workspace("send", "INV-404") == 1

    def test_template_preview(self, workspace, capsys):
        assert workspace("template-preview") == 0
        out = capsys.readouterr().out
        assert "Subject: Friendly reminder: Invoice INV-2401" in out
        assert "Hi Bluehill Media," in out

    def test_bad_override(self, workspace):
        assert workspace("run", "--override", "nonsense") == 1

    def test_bad_today(self, workspace):
        with pytest.raises(SystemExit):
            main(["--today", "10/01/2026", "preview"])

    def test_smtp_without_credentials(self, tmp_path, monkeypatch):
        for var in ("SMTP_USERNAME", "SMTP_PASSWORD", "REMINDER_FROM_EMAIL"):
            monkeypatch.delenv(var, raising=False)
        config_path = tmp_path / "config.yaml"
        config_path.write_text(yaml.safe_dump({"dispatch": {"transport": "smtp"}}), encoding="utf-8")
        assert main(["--config", str(config_path), "--db", str(tmp_path / "r.db"), "run"]) == 1

    def test_json_flag_after_subcommand(self, workspace, capsys):
        workspace("import", str(workspace.csv_path))
        capsys.readouterr()

        assert workspace("run", "--json") == 0
        result = json.loads(capsys.readouterr().out)
        assert result["sent"] == 1

        assert workspace("history", "--json") == 0
        assert json.loads(capsys.readouterr().out)[0]["status"] == "sent"

    def test_insights(self, workspace, capsys):
        workspace("import", str(workspace.csv_path))
        capsys.readouterr()

        assert workspace("insights", "--json") == 0
        report = json.loads(capsys.readouterr().out)
        assert report["suggestion"]["invoice_number"] == "INV-1001"
        assert report["effectiveness"]["reminders_sent"] == 0

        workspace("send", "INV-1001")
        capsys.readouterr()
        assert workspace("insights") == 0
        out = capsys.readouterr().out
        assert "Suggested: nothing is due a reminder right now." in out
        assert "0 of 1 reminders led to payment" in out

    def test_audit(self, workspace, capsys):
        workspace("import", str(workspace.csv_path))
        workspace("send", "INV-1001")
        capsys.readouterr()

        assert workspace("audit", "--json") == 0
        actions = [row["action"] for row in json.loads(capsys.readouterr().out)]
        assert "sent" in actions

    def test_audit_empty(self, workspace, capsys):
        assert workspace("audit") == 0
        assert "No audit entries yet." in capsys.readouterr().out

    def test_variants_without_api_key(self, workspace):
        workspace("import", str(workspace.csv_path))
        assert workspace("variants", "INV-1001") == 1

    def test_stage_thresholds_in_config_rejected(self, tmp_path):
        config_path = tmp_path / "config.yaml"
        config_path.write_text(yaml.safe_dump({"stages": {"first_after_days": 3}}), encoding="utf-8")
        assert main(["--config", str(config_path), "--db", str(tmp_path / "r.db"), "preview"]) == 1
