import os

# Path to the configuration file. Can be overriden for tests.
CONFIG_FILE_PATH = os.path.expanduser( '~/.loopback-oauth' )

# Loopback listener. The port must match the redirect URI registered with the
# identity provider, so it is never renegotiated at runtime.
OAUTH_PORT = 17927
LOOPBACK_HOST = '127.0.0.1'
CALLBACK_PATH = '/cb'
FULL_URL_HEADER = 'Full-Url'

# One bounded read per connection, and at most this many accepted connections
# per flow (initial redirect + callback).
MAX_REQUEST_BYTES = 4096
MAX_ATTEMPTS = 2

# Events published to the embedding application.
OAUTH_CALLBACK_EVENT = 'oauth-callback'
OAUTH_CALLBACK_FAILED_EVENT = 'oauth-callback-failed'

# OAuth-related constants
OAUTH_CALLBACK_TIMEOUT = 120  # 2 minutes
OAUTH_TOKEN_REFRESH_BUFFER = 300  # 5 minutes before expiry
OAUTH_TOKEN_EXCHANGE_TIMEOUT = 10

DEFAULT_APP_NAME = 'the app'

# Environment overrides.
BACKEND_URL_ENV_VAR = 'LOOPBACK_OAUTH_BACKEND_URL'
CURRENT_ENV_VAR = 'LOOPBACK_OAUTH_ENV'

# Ephemeral credentials mode - when set, disables all credential persistence to disk.
# Tokens obtained through the desktop flow are discarded once the login completes.
EPHEMERAL_CREDS_ENV_VAR = 'LOOPBACK_OAUTH_EPHEMERAL_CREDS'
