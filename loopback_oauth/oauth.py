"""
Desktop OAuth login through the loopback listener.

1. Start the loopback listener on the registered port
2. Open the backend's desktop login page in the system browser
3. The identity provider redirects to the listener, which publishes the
   full callback URL as the ``oauth-callback`` event
4. Exchange the authorization code with the backend for tokens
"""

import logging
import time
import urllib.parse
import webbrowser
from typing import Dict, Optional, Tuple

import requests

from .constants import (
    OAUTH_CALLBACK_EVENT,
    OAUTH_CALLBACK_FAILED_EVENT,
    OAUTH_CALLBACK_TIMEOUT,
    OAUTH_TOKEN_EXCHANGE_TIMEOUT,
    OAUTH_TOKEN_REFRESH_BUFFER,
)
from .events import EventBus
from .oauth_server import ListenerConfig, start_oauth_flow
from .utils import OAuthFlowException

logger = logging.getLogger(__name__)


def is_token_expired(expires_at: int, buffer_seconds: int = OAUTH_TOKEN_REFRESH_BUFFER) -> bool:
    """
    Check if a token has expired.

    Args:
        expires_at: Unix timestamp when token expires
        buffer_seconds: Treat tokens expiring within this window as expired

    Returns:
        True if token is expired, False otherwise
    """
    if not expires_at:
        return True
    return int(time.time()) >= (expires_at - buffer_seconds)


def build_login_url(backend_url: str, port: int, return_to: str = '/',
                    organization_id: Optional[str] = None,
                    invitation_token: Optional[str] = None) -> str:
    """Build the backend desktop login URL that starts the provider redirect."""
    params = {
        'returnTo': return_to,
        'desktopPort': str(port),
    }
    if organization_id:
        params['organizationId'] = organization_id
    if invitation_token:
        params['invitationToken'] = invitation_token

    base = backend_url.rstrip('/')
    return f"{base}/auth/login/desktop?{urllib.parse.urlencode(params)}"


def parse_callback_url(url: str) -> Tuple[str, str]:
    """
    Extract the authorization code and state from a captured callback URL.

    Query parameters are used first; providers that return their response in
    the fragment are handled by falling back to the fragment parameters.

    Args:
        url: Full browser URL published by the listener

    Returns:
        Tuple of (code, state); state defaults to "{}"

    Raises:
        OAuthFlowException: If the provider returned an error or no code
    """
    if not url:
        raise OAuthFlowException("No callback URL received")

    parsed = urllib.parse.urlparse(url)
    params = urllib.parse.parse_qs(parsed.query)
    if 'code' not in params and 'error' not in params and parsed.fragment:
        params = urllib.parse.parse_qs(parsed.fragment)

    if 'error' in params:
        error = params['error'][0]
        error_desc = params.get('error_description', ['Unknown error'])[0]
        raise OAuthFlowException(f"OAuth error: {error} - {error_desc}")

    code = params.get('code', [None])[0]
    if not code:
        raise OAuthFlowException("No authorization code received")

    state = params.get('state', ['{}'])[0]
    return code, state


def exchange_code_for_token(backend_url: str, code: str, state: str,
                            timeout: float = OAUTH_TOKEN_EXCHANGE_TIMEOUT) -> Dict:
    """
    Exchange an authorization code for tokens with the backend.

    Returns:
        Dictionary with access_token, refresh_token, expires_at and user

    Raises:
        OAuthFlowException: If the exchange fails
    """
    url = f"{backend_url.rstrip('/')}/auth/token"

    try:
        response = requests.post(url, json={'code': code, 'state': state}, timeout=timeout)
    except requests.exceptions.RequestException as e:
        raise OAuthFlowException(f"Token exchange failed: {str(e)}")

    if not response.ok:
        raise OAuthFlowException(f"Token exchange failed: {response.text}", code=response.status_code)

    try:
        data = response.json()
        expires_in = int(data.get('expiresIn', 3600))
        return {
            'access_token': data['accessToken'],
            'refresh_token': data['refreshToken'],
            'expires_at': int(time.time()) + expires_in,
            'user': data.get('user', {}),
        }
    except (ValueError, KeyError, TypeError) as e:
        raise OAuthFlowException(f"Invalid token response: {str(e)}", code=response.status_code)


class DesktopAuth:
    """Runs the browser round trip through the loopback listener."""

    def __init__(self, backend_url: str, app: Optional[EventBus] = None,
                 config: Optional[ListenerConfig] = None):
        self.backend_url = backend_url.rstrip('/')
        self.app = app if app is not None else EventBus()
        self.config = config or ListenerConfig()

    def initiate(self, return_to: str = '/', organization_id: Optional[str] = None,
                 invitation_token: Optional[str] = None, no_browser: bool = False,
                 timeout: float = OAUTH_CALLBACK_TIMEOUT) -> Dict:
        """
        Run the desktop OAuth flow.

        Args:
            return_to: Path the web app should return to after login
            organization_id: Organization to log into (optional)
            invitation_token: Pending invitation to accept (optional)
            no_browser: If True, print URL instead of opening browser
            timeout: Maximum time to wait for the callback (seconds)

        Returns:
            Token record from the backend

        Raises:
            OAuthFlowException: If any step of the flow fails
        """
        # Register before the listener starts so a fast redirect is not missed.
        callback = self.app.once(OAUTH_CALLBACK_EVENT)
        unlisten_failure = self.app.listen(OAUTH_CALLBACK_FAILED_EVENT, callback.abort)

        try:
            port = start_oauth_flow(self.app, self.config)
            print(f"OAuth callback listener started on port {port}")

            login_url = build_login_url(
                self.backend_url,
                port,
                return_to=return_to,
                organization_id=organization_id,
                invitation_token=invitation_token
            )

            if no_browser:
                print(f"\nPlease visit this URL to authenticate:\n{login_url}\n")
            else:
                print("Opening browser for authentication...")
                if not webbrowser.open(login_url):
                    print(f"\nCould not open browser. Please visit this URL:\n{login_url}\n")

            print("Waiting for authentication...")
            try:
                callback_url = callback.wait(timeout=timeout)
            except OAuthFlowException as e:
                if callback.is_set():
                    raise OAuthFlowException(f"Authentication failed: {str(e)}", port=port)
                raise OAuthFlowException(f"OAuth callback timeout after {timeout:g} seconds", port=port)
        finally:
            unlisten_failure()
            callback.cancel()

        code, state = parse_callback_url(callback_url)
        logger.debug("Got authorization code, exchanging for token")
        return exchange_code_for_token(self.backend_url, code, state)


def perform_desktop_auth(backend_url: str, environment: Optional[str] = None,
                         return_to: str = '/', organization_id: Optional[str] = None,
                         invitation_token: Optional[str] = None, no_browser: bool = False,
                         timeout: float = OAUTH_CALLBACK_TIMEOUT) -> bool:
    """
    Perform the desktop OAuth login and save the tokens.

    Args:
        backend_url: Backend issuing the tokens
        environment: Environment name (optional)
        return_to: Path the web app should return to after login
        organization_id: Organization to log into (optional)
        invitation_token: Pending invitation to accept (optional)
        no_browser: Don't open browser automatically
        timeout: Maximum time to wait for the callback (seconds)

    Returns:
        True if login successful
    """
    from . import utils

    try:
        tokens = DesktopAuth(backend_url).initiate(
            return_to=return_to,
            organization_id=organization_id,
            invitation_token=invitation_token,
            no_browser=no_browser,
            timeout=timeout
        )
    except OAuthFlowException as e:
        print(f"\nDesktop auth failed: {str(e)}")
        return False

    utils.writeTokensToConfig(environment, tokens, backend_url=backend_url)
    if not utils.isEphemeral():
        if environment and environment != 'default':
            print(f"\nOAuth tokens saved to environment: {environment}")
        else:
            print("\nOAuth tokens saved as default")
    return True
