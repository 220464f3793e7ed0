#constants.py

VERSION = "1.0.0"
APP_NAME = "FrameMonkey"
SCRIPT_HANDLER = "FrameMonkey"

# File Paths
CONFIG_FILE = "settings.ini"
STORAGE_FILE = "framemonkey_values.json"
USERSCRIPTS_DIR = "userscripts"
SCRIPT_INDEX_FILE = "scripts.json"
PROFILE_NAME = "FrameMonkeyProfile"

# Run-at timing, lowest runs first
RUN_AT_PRIORITY = {
    "document-start": 0,
    "document-body": 1,
    "document-end": 2,
    "document-idle": 3,
}
DEFAULT_RUN_AT = "document-idle"

# DOM attributes / ids written into frames
FRAME_ID_ATTR = "data-framemonkey-id"
POLLING_ATTR = "data-framemonkey-polling"
MARKER_PREFIX = "framemonkey-injected-"
FRAME_ID_PREFIX = "framemonkey-frame-"

# In-page globals
OUTBOX_VAR = "__framemonkeyOutbox"
HOST_EVENTS_VAR = "__framemonkeyFrameEvents"
RESOURCE_CACHE_VAR = "_gmResourceCache"

# Resource fetching
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

# Config
SECTION = "Settings"
DEFAULTS = {
    'poll_interval': '1.0',
    'force_check_every': '30',
    'idle_delay': '0.1',
    'refresh_delay': '0.3',
    'max_retries': '3',
    'request_timeout': '10',
    'enforce_connect': 'False',
    'storage_file': STORAGE_FILE,
    'scripts_dir': USERSCRIPTS_DIR,
    'log_level': 'INFO',
    'log_file': '',
    'headless': 'False',
}
