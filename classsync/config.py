"""
ClassSync configuration.

All settings are read from environment variables so the same code runs
under the CLI, the Flask server and the test suite.
"""

import os

# Local store
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///classsync.db')

# Google OAuth client (used only for refresh-token exchanges)
GOOGLE_CLIENT_ID = os.getenv('GOOGLE_CLIENT_ID', '')
GOOGLE_CLIENT_SECRET = os.getenv('GOOGLE_CLIENT_SECRET', '')
GOOGLE_TOKEN_URI = os.getenv('GOOGLE_TOKEN_URI', 'https://oauth2.googleapis.com/token')
GOOGLE_SCOPES = ['https://www.googleapis.com/auth/calendar']

# Calendar settings
CALENDAR_ID = os.getenv('CALENDAR_ID', 'primary')
TIMEZONE = os.getenv('TIMEZONE', 'Asia/Taipei')

# Namespace tag written into every event this system creates
EVENT_SOURCE_TAG = os.getenv('EVENT_SOURCE_TAG', 'class_sync')

# Token guard
TOKEN_EXPIRY_MARGIN_SECONDS = int(os.getenv('TOKEN_EXPIRY_MARGIN_SECONDS', 60))

# Google API call behaviour
HTTP_TIMEOUT_SECONDS = int(os.getenv('HTTP_TIMEOUT_SECONDS', 30))
API_MAX_RETRIES = int(os.getenv('API_MAX_RETRIES', 3))
API_BASE_BACKOFF = float(os.getenv('API_BASE_BACKOFF', 2))
API_CALL_DELAY = float(os.getenv('API_CALL_DELAY', 0.1))

# Orphan re-link window around the expected start time
ORPHAN_MATCH_TOLERANCE_MINUTES = int(os.getenv('ORPHAN_MATCH_TOLERANCE_MINUTES', 30))

# Flask server settings
FLASK_HOST = os.getenv('FLASK_HOST', '0.0.0.0')
FLASK_PORT = int(os.getenv('FLASK_PORT', 5001))

LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
