"""Environment variables and path constants.

All configuration is loaded once at import time from environment
variables (with optional ``.env`` file support via *python-dotenv*).
Durations are in seconds.
"""

import os
from dotenv import load_dotenv

load_dotenv()

# -- Session-control service --------------------------------------------------
ORCH_SESSION_API_URL = os.getenv('ORCH_SESSION_API_URL',
                                 'http://127.0.0.1:3000/api')
ORCH_SESSION_API_TOKEN = os.getenv('ORCH_SESSION_API_TOKEN')
ORCH_SESSION_API_TIMEOUT = float(os.getenv('ORCH_SESSION_API_TIMEOUT', '30'))

# -- Filesystem paths ---------------------------------------------------------
ORCH_STATE_DIR = os.getenv('ORCH_STATE_DIR',
                           os.path.expanduser('~/.session-orchestrator'))
ORCH_STATE_FILE = os.getenv('ORCH_STATE_FILE',
                            os.path.join(ORCH_STATE_DIR, 'orchestrations.json'))
ORCH_TEMPLATES_DIR = os.getenv(
    'ORCH_TEMPLATES_DIR',
    os.path.join(os.path.dirname(os.path.abspath(__file__)), 'templates'))
ORCH_CUSTOM_TEMPLATES_DIR = os.getenv(
    'ORCH_CUSTOM_TEMPLATES_DIR', os.path.join(ORCH_STATE_DIR, 'templates'))

# -- Worker pool --------------------------------------------------------------
ORCH_MAX_WORKERS = int(os.getenv('ORCH_MAX_WORKERS', '5'))
ORCH_WORKER_TIMEOUT = float(os.getenv('ORCH_WORKER_TIMEOUT', '300'))
ORCH_RETRY_LIMIT = int(os.getenv('ORCH_RETRY_LIMIT', '2'))
ORCH_SPAWN_DELAY = float(os.getenv('ORCH_SPAWN_DELAY', '0.5'))

# -- Polling ------------------------------------------------------------------
ORCH_POLL_INTERVAL = float(os.getenv('ORCH_POLL_INTERVAL', '3'))
ORCH_WORKER_POLL_INTERVAL = float(os.getenv('ORCH_WORKER_POLL_INTERVAL', '2'))
ORCH_SUBSESSION_POLL_INTERVAL = float(
    os.getenv('ORCH_SUBSESSION_POLL_INTERVAL', '5'))
ORCH_SAVE_DEBOUNCE = float(os.getenv('ORCH_SAVE_DEBOUNCE', '1'))

# -- Sub-sessions -------------------------------------------------------------
ORCH_INACTIVITY_THRESHOLD = float(os.getenv('ORCH_INACTIVITY_THRESHOLD', '60'))
ORCH_CONFIRMATION_DELAY = float(os.getenv('ORCH_CONFIRMATION_DELAY', '30'))
ORCH_MAX_RESULT_LENGTH = int(os.getenv('ORCH_MAX_RESULT_LENGTH', '50000'))
ORCH_TASK_SPAWN_WINDOW = float(os.getenv('ORCH_TASK_SPAWN_WINDOW', '10'))
