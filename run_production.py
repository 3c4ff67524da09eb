#!/usr/bin/env python3
"""
Production server runner for Receipt Reconciler.

Applies pending Alembic migrations, then replaces itself with Gunicorn
running Uvicorn workers (see gunicorn_conf.py). Meant to be started by
systemd; use run.py for development.
"""
import os
import subprocess
import sys
from pathlib import Path

project_root = Path(__file__).parent
bin_dir = project_root / ".venv" / "bin"
gunicorn_bin = bin_dir / "gunicorn"
alembic_bin = bin_dir / "alembic"


def run_server():
    """Migrate the database and start Gunicorn"""
    if not gunicorn_bin.exists():
        print("Gunicorn not found. Please install: pip install -e .")
        return 1

    if alembic_bin.exists():
        result = subprocess.run([str(alembic_bin), "upgrade", "head"], cwd=str(project_root))
        if result.returncode != 0:
            print("Database migration failed, not starting the server", file=sys.stderr)
            return result.returncode

    print("Starting Receipt Reconciler (Production Mode)")
    print(f"Bind: {os.getenv('GUNICORN_BIND', '0.0.0.0:8000')}, workers: {os.getenv('GUNICORN_WORKERS', '2')}")
    print(f"AI classification: {'enabled' if os.getenv('OPENAI_API_KEY') else 'disabled'}")
    print(f"Cron endpoint: {'protected' if os.getenv('CRON_SECRET') else 'disabled (CRON_SECRET not set)'}")

    os.chdir(project_root)
    os.execv(str(gunicorn_bin), [
        str(gunicorn_bin),
        "-c", "gunicorn_conf.py",
        "reconciler.main:app"
    ])


if __name__ == "__main__":
    sys.exit(run_server() or 0)
