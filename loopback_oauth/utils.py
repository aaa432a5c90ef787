import os
import yaml
import tempfile
import stat
import shutil

from .constants import BACKEND_URL_ENV_VAR, CONFIG_FILE_PATH, EPHEMERAL_CREDS_ENV_VAR


class OAuthFlowException ( Exception ):
    '''Exception type used for errors in the loopback OAuth flow.'''

    def __init__(self, message, port=None, code=None):
        """
        Initialize the exception with a message and optional context.

        Args:
            message (str): The error message.
            port (int, optional): The loopback port involved, if any.
            code (int, optional): An HTTP status code returned by the backend. Defaults to None.
        """
        super().__init__(message)
        self.port = port
        self.code = code


def isEphemeral():
    return bool( os.environ.get( EPHEMERAL_CREDS_ENV_VAR ) )

def loadConfig():
    """
    Load the configuration file.

    Returns:
        dict: Loaded configuration or None if the file doesn't exist
    """
    # If ephemeral credentials mode is enabled, skip disk operations entirely
    if isEphemeral():
        return None

    try:
        with open(CONFIG_FILE_PATH, 'rb') as f:
            return yaml.safe_load(f.read())
    except FileNotFoundError:
        return None

def _getSection( conf, environment ):
    if environment is None or environment == 'default':
        return conf
    return conf.get( 'env', {} ).get( environment, None )

def getTokens( environment = None ):
    '''Get the stored token record for an environment.

    Args:
        environment (str): environment name, None or "default" for the top level.

    Returns:
        dict of tokens or None if nothing is stored.
    '''
    conf = loadConfig() or {}
    section = _getSection( conf, environment )
    if not section:
        return None
    return section.get( 'oauth', None )

def getBackendUrl( override = None, environment = None ):
    '''Resolve the backend URL: explicit value, environment variable, then config file.

    Raises:
        OAuthFlowException: if no backend URL is configured.
    '''
    url = override or os.environ.get( BACKEND_URL_ENV_VAR, None )
    if not url:
        conf = loadConfig() or {}
        section = _getSection( conf, environment ) or {}
        url = section.get( 'backend_url', None ) or conf.get( 'backend_url', None )
    if not url:
        raise OAuthFlowException( "No backend URL configured, use --backend-url or set %s" % ( BACKEND_URL_ENV_VAR, ) )
    return url.rstrip( '/' )

def writeTokensToConfig( environment, tokens, backend_url = None ):
    """
    Securely write a token record to the configuration file.

    Args:
        environment (str): Environment name, None or "default" for the top level.
        tokens (dict): Token record (access_token, refresh_token, expires_at, user).
        backend_url (str): Backend the tokens were issued by (optional).
    """
    # If ephemeral credentials mode is enabled, skip disk operations entirely
    if isEphemeral():
        print( "Ephemeral credentials mode enabled - tokens will not be persisted to disk" )
        return

    conf = _readConfigForUpdate()

    if environment is None or environment == 'default':
        section = conf
    else:
        conf.setdefault( 'env', {} )
        section = conf[ 'env' ].setdefault( environment, {} )

    section[ 'oauth' ] = dict( tokens )
    if backend_url is not None:
        section[ 'backend_url' ] = backend_url

    _writeConfig( conf )

def removeTokensFromConfig( environment = None ):
    '''Remove the stored token record of an environment.

    Returns:
        True if a record was removed.
    '''
    if isEphemeral():
        return False

    conf = _readConfigForUpdate()
    section = _getSection( conf, environment )
    if not section or 'oauth' not in section:
        return False
    section.pop( 'oauth', None )
    _writeConfig( conf )
    return True

def _readConfigForUpdate():
    conf = {}
    try:
        with open( CONFIG_FILE_PATH, 'rb' ) as f:
            conf = yaml.safe_load( f.read() )
    except FileNotFoundError:
        pass

    # Handle scenario where a file is empty
    return conf or {}

def _writeConfig( conf ):
    content = yaml.safe_dump( conf, default_flow_style = False ).encode()

    # For security reasons we first write it to a temporary file, chown + chmod it and
    # then move it to a final location. Without doing that, there is a potential race condition
    # with the file being written to and read from by another user (before we chmod it).
    fd, tmp_path = tempfile.mkstemp()

    # Set secure ownership and permissions on the temporary file.
    os.chown( tmp_path, os.getuid(), os.getgid() )
    os.chmod( tmp_path, stat.S_IWUSR | stat.S_IRUSR )  # 0o600

    try:
        try:
            os.write(fd, content)
        finally:
            os.close(fd)

        # Move is an atomic operation on unix.
        shutil.move(tmp_path, CONFIG_FILE_PATH)
    finally:
        if os.path.isfile(tmp_path):
            os.unlink(tmp_path)
