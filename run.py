"""Local entry point for the CAKTO billing service.

Usage:
    python run.py            # port from $PORT, default 5001
    python run.py 8000

Point the CAKTO dashboard (or a tunnel) at http://<host>:<port>/cakto/webhook.
Re-launches itself under ./venv when that virtualenv exists.
"""

import os
import subprocess
import sys

_root = os.path.dirname(os.path.abspath(__file__))
_venv_python = os.path.join(_root, "venv", "bin", "python")

if os.path.exists(_venv_python) and os.path.realpath(sys.executable) != os.path.realpath(_venv_python):
    try:
        sys.exit(subprocess.call([_venv_python] + sys.argv))
    except KeyboardInterrupt:
        sys.exit(0)

from dotenv import load_dotenv

load_dotenv()  # CAKTO_* and MAIL_* usually live in .env

from app import create_app

app = create_app()

if __name__ == "__main__":
    port = int(sys.argv[1]) if len(sys.argv) > 1 else int(os.environ.get("PORT", 5001))
    app.logger.info("Webhook endpoint: http://localhost:%s/cakto/webhook", port)
    app.run(debug=app.config.get("DEBUG", False), host="0.0.0.0", port=port)
