"""Loopback listener completing desktop OAuth redirect flows."""

__version__ = "1.2.0"
__author__ = "Maxime Lamothe-Brassard ( Refraction Point, Inc )"
__author_email__ = "maxime@refractionpoint.com"
__license__ = "Apache v2"
__copyright__ = "Copyright (c) 2020 Refraction Point, Inc"

from .events import EventBus
from .oauth_server import CallbackListener, ListenerConfig, start_oauth_flow
from .oauth import DesktopAuth, perform_desktop_auth
from .utils import OAuthFlowException
