import sys
import traceback

from .constants import CURRENT_ENV_VAR, OAUTH_CALLBACK_TIMEOUT


def cli(args):
    """
    Command line interface for the loopback OAuth helper.

    Args:
        args (list): list of CLI arguments to parse.
    """
    import argparse
    import os
    import time

    from rich.console import Console

    console = Console()

    parser = argparse.ArgumentParser( prog = 'loopback-oauth' )
    parser.add_argument( 'action',
                         type = str,
                         help = 'action to perform, currently supported "version" (print version), "listen" (capture one OAuth redirect and print the full URL), "login" (desktop OAuth login storing tokens), "status" (show stored tokens), "logout" (remove stored tokens)' )

    # Hack around a bit so that we can pass the help
    # to the proper sub-command line.
    rootArgs = args[ 1: 2 ]

    # Everything after the command name and the action name that is passed
    # to the action argument parser.
    # For example: loopback-oauth login --no-browser -> ["--no-browser"]
    actionArgs = args[ 2: ]
    args = parser.parse_args( rootArgs )

    defaultEnv = os.environ.get( CURRENT_ENV_VAR, 'default' ) or 'default'

    if args.action.lower() == 'version':
        from . import __version__
        print( "Loopback OAuth Version %s" % ( __version__, ) )
    elif args.action.lower() == 'listen':
        from .constants import OAUTH_CALLBACK_EVENT, OAUTH_CALLBACK_FAILED_EVENT
        from .events import EventBus
        from .oauth_server import ListenerConfig, start_oauth_flow

        parser = argparse.ArgumentParser( prog = 'loopback-oauth listen' )
        parser.add_argument( '--timeout',
                             type = float,
                             default = OAUTH_CALLBACK_TIMEOUT,
                             help = 'seconds to wait for the callback (default: %(default)s)' )
        parser.add_argument( '--app-name',
                             type = str,
                             default = 'your terminal',
                             help = 'name shown on the page the browser lands on' )
        listenArgs = parser.parse_args( actionArgs )

        # Status goes to stderr so stdout only carries the captured URL.
        statusConsole = Console( stderr = True )
        config = ListenerConfig( app_name = listenArgs.app_name )
        bus = EventBus()
        callback = bus.once( OAUTH_CALLBACK_EVENT )
        unlisten = bus.listen( OAUTH_CALLBACK_FAILED_EVENT, callback.abort )
        try:
            port = start_oauth_flow( bus, config )
            statusConsole.print( "Listening on port [bold]%d[/bold], redirect URI: %s" % ( port, config.redirect_uri ) )
            statusConsole.print( "Waiting for the OAuth redirect..." )
            url = callback.wait( timeout = listenArgs.timeout )
        finally:
            unlisten()
            callback.cancel()
        print( url )
    elif args.action.lower() == 'login':
        from .oauth import perform_desktop_auth
        from .utils import getBackendUrl

        parser = argparse.ArgumentParser( prog = 'loopback-oauth login' )
        parser.add_argument( '--backend-url',
                             type = str,
                             default = None,
                             help = 'backend issuing the tokens (default: from environment or config file)' )
        parser.add_argument( '--environment', '--env',
                             type = str,
                             default = defaultEnv,
                             help = 'environment name (default: "default")' )
        parser.add_argument( '--return-to',
                             type = str,
                             default = '/',
                             help = 'path the web app returns to after login' )
        parser.add_argument( '--organization-id',
                             type = str,
                             default = None,
                             help = 'organization to log into' )
        parser.add_argument( '--invitation-token',
                             type = str,
                             default = None,
                             help = 'pending invitation to accept' )
        parser.add_argument( '--no-browser',
                             action = 'store_true',
                             help = 'print URL instead of opening browser' )
        parser.add_argument( '--timeout',
                             type = float,
                             default = OAUTH_CALLBACK_TIMEOUT,
                             help = 'seconds to wait for the callback (default: %(default)s)' )
        loginArgs = parser.parse_args( actionArgs )

        backendUrl = getBackendUrl( loginArgs.backend_url, loginArgs.environment )
        success = perform_desktop_auth(
            backendUrl,
            environment = loginArgs.environment,
            return_to = loginArgs.return_to,
            organization_id = loginArgs.organization_id,
            invitation_token = loginArgs.invitation_token,
            no_browser = loginArgs.no_browser,
            timeout = loginArgs.timeout
        )

        if not success:
            sys.exit( 1 )
    elif args.action.lower() == 'status':
        from .oauth import is_token_expired
        from .utils import getTokens

        parser = argparse.ArgumentParser( prog = 'loopback-oauth status' )
        parser.add_argument( '--environment', '--env',
                             type = str,
                             default = defaultEnv,
                             help = 'environment name (default: "default")' )
        statusArgs = parser.parse_args( actionArgs )

        tokens = getTokens( statusArgs.environment )
        if not tokens:
            print( "No OAuth tokens stored for environment: %s" % ( statusArgs.environment, ) )
            print( "Run 'loopback-oauth login' to authenticate." )
            return

        user = tokens.get( 'user', {} ) or {}
        expiresAt = tokens.get( 'expires_at', 0 )
        console.print( "ENVIRONMENT: %s" % ( statusArgs.environment, ) )
        console.print( "USER: %s" % ( user.get( 'email', 'unknown' ), ) )
        console.print( "EXPIRES: %s" % ( time.strftime( '%Y-%m-%d %H:%M:%S', time.localtime( expiresAt ) ), ) )
        if is_token_expired( expiresAt ):
            console.print( "STATUS: [bold red]expired[/bold red]" )
        else:
            console.print( "STATUS: [bold green]valid[/bold green]" )
    elif args.action.lower() == 'logout':
        from .utils import removeTokensFromConfig

        parser = argparse.ArgumentParser( prog = 'loopback-oauth logout' )
        parser.add_argument( '--environment', '--env',
                             type = str,
                             default = defaultEnv,
                             help = 'environment name (default: "default")' )
        logoutArgs = parser.parse_args( actionArgs )

        if removeTokensFromConfig( logoutArgs.environment ):
            print( "Removed OAuth tokens for environment: %s" % ( logoutArgs.environment, ) )
        else:
            print( "No OAuth tokens stored for environment: %s" % ( logoutArgs.environment, ) )
    else:
        raise Exception( "invalid action" )


def main():
    import logging

    from rich.console import Console
    from rich.logging import RichHandler

    args = sys.argv

    # Hack since we don't have access to parsed args here and parsing itself may fail
    debug_mode = False
    if "--debug" in args:
        debug_mode = True
        args.remove("--debug")

    logging.basicConfig(
        level = logging.DEBUG if debug_mode else logging.WARNING,
        format = "%(message)s",
        handlers = [ RichHandler( console = Console( stderr = True ), show_path = False ) ]
    )

    try:
        cli(args)
    except Exception as e:
        print("Error:", e, file=sys.stderr)

        if debug_mode:
            print(traceback.format_exc(), file=sys.stderr)

        return 1

if __name__ == "__main__":
    sys.exit(main())
