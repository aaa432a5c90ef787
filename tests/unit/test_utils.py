import os
import stat

import pytest
import yaml

from loopback_oauth import utils
from loopback_oauth.constants import BACKEND_URL_ENV_VAR, EPHEMERAL_CREDS_ENV_VAR
from loopback_oauth.utils import OAuthFlowException

TOKENS = {
    'access_token': 'access-1',
    'refresh_token': 'refresh-1',
    'expires_at': 1900000000,
    'user': {'id': 'u1', 'email': 'ada@app.example'},
}


def test_exception_carries_context():
    e = OAuthFlowException("Failed to bind port 17927: Address already in use", port=17927)

    assert str(e) == "Failed to bind port 17927: Address already in use"
    assert e.port == 17927
    assert e.code is None


def test_write_default_tokens(config_file):
    utils.writeTokensToConfig('default', TOKENS, backend_url='https://api.app.example')

    file_stat = os.stat(config_file)
    assert stat.S_IMODE(file_stat.st_mode) == 0o600

    with open(config_file, 'r') as f:
        conf = yaml.safe_load(f)
    assert conf == {'oauth': TOKENS, 'backend_url': 'https://api.app.example'}
    assert utils.getTokens() == TOKENS
    assert utils.getTokens('default') == TOKENS


def test_write_environment_keeps_other_sections(config_file):
    utils.writeTokensToConfig(None, TOKENS)
    other = dict(TOKENS, access_token='access-2')

    utils.writeTokensToConfig('staging', other)

    assert utils.getTokens() == TOKENS
    assert utils.getTokens('staging') == other
    assert utils.getTokens('production') is None


def test_remove_tokens(config_file):
    utils.writeTokensToConfig('staging', TOKENS, backend_url='https://staging.app.example')

    assert utils.removeTokensFromConfig('staging')
    assert not utils.removeTokensFromConfig('staging')
    assert utils.getTokens('staging') is None

    # The backend URL of the environment survives a logout.
    assert utils.loadConfig()['env']['staging'] == {'backend_url': 'https://staging.app.example'}


def test_empty_config_file(config_file):
    with open(config_file, 'w') as f:
        f.write('')

    assert utils.getTokens() is None
    utils.writeTokensToConfig('default', TOKENS)
    assert utils.getTokens() == TOKENS


def test_ephemeral_mode_skips_disk(config_file, monkeypatch, capsys):
    monkeypatch.setenv(EPHEMERAL_CREDS_ENV_VAR, '1')

    utils.writeTokensToConfig('default', TOKENS)

    assert not os.path.exists(config_file)
    assert utils.loadConfig() is None
    assert not utils.removeTokensFromConfig()
    assert "Ephemeral credentials mode enabled" in capsys.readouterr().out


class TestBackendUrl:

    def test_explicit_value_wins(self, config_file, monkeypatch):
        monkeypatch.setenv(BACKEND_URL_ENV_VAR, 'https://env.app.example')

        assert utils.getBackendUrl('https://flag.app.example/') == 'https://flag.app.example'

    def test_environment_variable(self, config_file, monkeypatch):
        monkeypatch.setenv(BACKEND_URL_ENV_VAR, 'https://env.app.example')
        utils.writeTokensToConfig('default', TOKENS, backend_url='https://file.app.example')

        assert utils.getBackendUrl() == 'https://env.app.example'

    def test_config_file_section_then_top_level(self, config_file):
        utils.writeTokensToConfig('default', TOKENS, backend_url='https://file.app.example')
        utils.writeTokensToConfig('staging', TOKENS, backend_url='https://staging.app.example')

        assert utils.getBackendUrl(environment='staging') == 'https://staging.app.example'
        assert utils.getBackendUrl(environment='other') == 'https://file.app.example'
        assert utils.getBackendUrl() == 'https://file.app.example'

    def test_missing(self, config_file):
        with pytest.raises(OAuthFlowException) as exc_info:
            utils.getBackendUrl()

        assert BACKEND_URL_ENV_VAR in str(exc_info.value)
