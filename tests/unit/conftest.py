import os
import socket
import sys

import pytest

# Get the directory of the current conftest.py file
current_dir = os.path.dirname(os.path.abspath(__file__))

# Calculate the project root (adjust the number of ".." if needed)
project_root = os.path.abspath(os.path.join(current_dir, '../../'))

# Insert the project root at the beginning of sys.path
if project_root not in sys.path:
    sys.path.insert(0, project_root)

import loopback_oauth.utils
from loopback_oauth.constants import BACKEND_URL_ENV_VAR, CURRENT_ENV_VAR, EPHEMERAL_CREDS_ENV_VAR


@pytest.fixture
def free_port():
    """A loopback port that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    """Point the configuration file at a temporary path with a clean environment."""
    path = str(tmp_path / 'loopback-oauth.yaml')
    monkeypatch.setattr(loopback_oauth.utils, 'CONFIG_FILE_PATH', path)
    for name in (BACKEND_URL_ENV_VAR, CURRENT_ENV_VAR, EPHEMERAL_CREDS_ENV_VAR):
        monkeypatch.delenv(name, raising=False)
    return path
