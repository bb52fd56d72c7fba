"""Cogsworth dev launcher. Starts the backend, or the terminal client."""

import argparse
import asyncio
import logging
import os
import subprocess
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

HOST = os.getenv("HOST", "0.0.0.0")
BACKEND_PORT = os.getenv("BACKEND_PORT", "3001")


def main():
    parser = argparse.ArgumentParser(description="Cogsworth dev launcher")
    parser.add_argument("--client", action="store_true",
                        help="Run the terminal chat client instead of the server")
    parser.add_argument("--url", default=f"ws://localhost:{BACKEND_PORT}/ws",
                        help="Session endpoint for --client")
    parser.add_argument("--personality", default="standard",
                        help="Personality directive inputs sent with each message")
    parser.add_argument("--name", default=None, help="Your name, as the robot should use it")
    parser.add_argument("--speak", nargs="+", default=None, metavar="CMD",
                        help="TTS command for --client, e.g. --speak espeak")
    parser.add_argument("--echo", action="store_true",
                        help="Serve with the echo LLM (no upstream API needed)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.client:
        from cogsworth.client.console import run_console
        asyncio.run(run_console(args.url, args.personality, args.name, args.speak))
        return

    env = os.environ.copy()
    if args.echo:
        env["COGSWORTH_ECHO"] = "1"

    print(f"Starting backend on http://localhost:{BACKEND_PORT} ...")
    proc = subprocess.Popen(
        [sys.executable, "-m", "uvicorn", "backend.app:app", "--reload",
         "--host", HOST, "--port", BACKEND_PORT],
        cwd=ROOT, env=env,
    )
    try:
        proc.wait()
    except KeyboardInterrupt:
        print("\nShutting down...")
        proc.terminate()
        proc.wait()


if __name__ == "__main__":
    main()
