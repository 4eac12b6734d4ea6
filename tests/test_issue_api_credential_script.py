import hashlib
import json
import subprocess
import sys
from pathlib import Path

SCRIPT_PATH = Path(__file__).resolve().parents[1] / "scripts" / "issue_api_credential.py"


def _run(*args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [sys.executable, str(SCRIPT_PATH), *args],
        check=True,
        capture_output=True,
        text=True,
    )


def test_issue_api_credential_emits_hashed_entry() -> None:
    completed = _run("--module-id", "scorer-1", "--role", "scorer", "--api-key", "plain-key")

    payload = json.loads(completed.stdout)
    assert payload["module_id"] == "scorer-1"
    assert payload["api_key"] == "plain-key"
    credentials = json.loads(payload["credentials_json"])
    assert credentials == {
        "scorer-1": {"key_hash": hashlib.sha256(b"plain-key").hexdigest(), "role": "scorer"},
    }


def test_issue_api_credential_appends_rotated_key() -> None:
    existing = json.dumps({"scorer-1": {"key_hash": "old", "role": "scorer"}})

    completed = _run("--module-id", "scorer-1", "--api-key", "new-key", "--existing", existing)

    credentials = json.loads(json.loads(completed.stdout)["credentials_json"])
    assert [row["key_hash"] for row in credentials["scorer-1"]] == ["old", hashlib.sha256(b"new-key").hexdigest()]


def test_issue_api_credential_env_output() -> None:
    completed = _run("--module-id", "ops", "--role", "operator", "--api-key", "k", "--env")

    lines = completed.stdout.splitlines()
    assert lines[0].startswith("export RAWWIRE_API_CREDENTIALS_JSON='")
    assert lines[1] == "# api key for ops: k"


def test_issue_api_credential_generates_key_when_omitted() -> None:
    payload = json.loads(_run("--module-id", "ingest").stdout)
    assert len(payload["api_key"]) >= 32
    assert payload["role"] == "scorer"
