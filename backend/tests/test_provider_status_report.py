import importlib.util
import json
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

SCRIPT_PATH = os.path.join(os.path.dirname(os.path.dirname(__file__)), "scripts", "provider_status_report.py")
_spec = importlib.util.spec_from_file_location("provider_status_report", SCRIPT_PATH)
report = importlib.util.module_from_spec(_spec)
_spec.loader.exec_module(report)


def _seed(store):
    store.ensure_account("priest_ok", first_name="Asha")
    store.update_account("priest_ok", provider_status="approved", is_provider=True)
    store.create_provider_profile("priest_ok", approval_status="approved")

    store.ensure_account("priest_mirror")
    store.update_account("priest_mirror", provider_status="approved", is_provider=True)
    store.create_provider_profile("priest_mirror", approval_status="pending")

    store.ensure_account("priest_noprofile", first_name="Gopal", last_name="Das")
    store.update_account("priest_noprofile", provider_status="approved", is_provider=True)

    store.ensure_account("priest_revoked")
    store.update_account("priest_revoked", provider_status=None, is_provider=True)


def test_find_drift_reports_each_issue(store):
    _seed(store)

    issues = {(row["user_id"], row["issue"]) for row in report.find_drift(store)}

    assert issues == {
        ("priest_mirror", "status_mismatch"),
        ("priest_noprofile", "missing_profile"),
        ("priest_revoked", "access_flag_mismatch"),
    }


def test_repair_clears_drift(store):
    _seed(store)

    assert report.repair(store, report.find_drift(store)) == 3
    assert report.find_drift(store) == []
    assert store.get_provider_profile_for_user("priest_noprofile").name == "Gopal Das"
    assert store.get_account("priest_revoked").is_provider is False


def test_main_prints_json(store, monkeypatch, capsys):
    _seed(store)
    monkeypatch.setattr(sys, "argv", ["provider_status_report.py", "--db", store.db_path, "--json", "--repair"])

    assert report.main() == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["repaired"] == 3
    assert len(payload["drift"]) == 3
