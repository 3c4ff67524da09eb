#!/usr/bin/env python3
"""
Development server for Receipt Reconciler (uvicorn with --reload).

Usage:
    python run.py [--host HOST] [--port PORT] [--no-reload]
"""
import argparse
import subprocess
import sys
from pathlib import Path

project_root = Path(__file__).parent
venv_python = project_root / ".venv" / "bin" / "python"


def run_server():
    """Run the API with uvicorn from the project's virtual environment"""
    parser = argparse.ArgumentParser(description="Run the Receipt Reconciler API for development.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--no-reload", action="store_true", help="Disable hot reloading")
    args = parser.parse_args()

    python = venv_python if venv_python.exists() else Path(sys.executable)
    print(f"Starting Receipt Reconciler at http://{args.host}:{args.port}")
    print("Press Ctrl+C to stop")

    cmd = [str(python), "-m", "uvicorn", "reconciler.main:app", "--host", args.host, "--port", str(args.port)]
    if not args.no_reload:
        cmd.append("--reload")

    try:
        subprocess.run(cmd, cwd=str(project_root))
    except KeyboardInterrupt:
        print("\nShutting down server...")


if __name__ == "__main__":
    run_server()
