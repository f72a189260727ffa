"""DM-OS — dev launcher. Starts the API server in watch mode."""

import argparse
import os
import subprocess
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = os.getenv("PORT", "13013")


def main():
    parser = argparse.ArgumentParser(description="DM-OS dev launcher")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Data storage directory (default: ./data)")
    parser.add_argument("--narrator-url", default=None,
                        help="Narrator backend base URL (overrides NARRATOR_URL)")
    parser.add_argument("--no-reload", action="store_true",
                        help="Run without auto-reload")
    args = parser.parse_args()

    # The app reads its configuration from the environment in its own process.
    env = os.environ.copy()
    if args.data_dir:
        env["DATA_DIR"] = str(args.data_dir.resolve())
    if args.narrator_url:
        env["NARRATOR_URL"] = args.narrator_url

    cmd = [sys.executable, "-m", "uvicorn", "backend.app:create_app", "--factory",
           "--host", HOST, "--port", PORT]
    if not args.no_reload:
        cmd.append("--reload")

    print(f"Starting DM-OS on http://localhost:{PORT} ...")
    try:
        subprocess.run(cmd, cwd=ROOT, env=env, check=False)
    except KeyboardInterrupt:
        print("\nShutting down...")


if __name__ == "__main__":
    main()
