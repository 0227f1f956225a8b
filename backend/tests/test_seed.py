import os
import sqlite3
import subprocess
import sys
from pathlib import Path


BACKEND_DIR = Path(__file__).resolve().parents[1]
SEED_SCRIPT = BACKEND_DIR / "seed.py"

EXPECTED_USERS = {
    ("reception", "RECEPTIONIST"),
    ("doctor", "DOCTOR"),
    ("nurse", "NURSE"),
    ("admin", "ADMIN"),
}


def _run_seed(db_file: Path):
    env = os.environ.copy()
    env["CADUCEUS_DB_FILE"] = str(db_file)
    env["CADUCEUS_SEED_DEMO"] = "1"
    run = subprocess.run(
        [sys.executable, str(SEED_SCRIPT)],
        cwd=str(BACKEND_DIR),
        env=env,
        capture_output=True,
        text=True,
        check=False,
    )
    assert run.returncode == 0, f"seed.py failed\nSTDOUT:\n{run.stdout}\nSTDERR:\n{run.stderr}"


def _read_rows(db_file: Path):
    with sqlite3.connect(db_file) as conn:
        users = conn.execute('SELECT username, role FROM "user"').fetchall()
        appointments = conn.execute("SELECT status, version FROM appointment").fetchall()
        invoices = conn.execute("SELECT status, appointment_id FROM invoice").fetchall()
    return users, appointments, invoices


def test_seed_is_idempotent_for_demo_users_and_records(tmp_path):
    db_file = tmp_path / "seed-idempotent.db"

    _run_seed(db_file)
    _run_seed(db_file)

    users, appointments, invoices = _read_rows(db_file)

    assert len(users) == len(EXPECTED_USERS)
    assert set(users) == EXPECTED_USERS
    assert appointments == [("SCHEDULED", 0)]
    assert len(invoices) == 1
    assert invoices[0][0] == "DRAFT"
