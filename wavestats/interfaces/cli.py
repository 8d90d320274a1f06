import argparse
import json
import logging
import signal
import sys
import time
from typing import List, Optional

from dotenv import load_dotenv

from wavestats.crosscutting.config import ConfigError, Settings, setup_config
from wavestats.crosscutting.logging import setup_logging
from wavestats.infrastructure.persistence.profile_store import JsonProfileStore, ProfileStoreError


class CLI:
    """Command Line Interface for wavestats."""

    def __init__(self):
        """Initialize CLI."""
        # .env is loaded in run(), not here
        self.parser = self._create_parser()
        self._start_time = None

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create argument parser."""
        parser = argparse.ArgumentParser(
            prog='wavestats',
            description='Spotify listening statistics backend'
        )
        parser.add_argument(
            '--log-level',
            choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
            default=None,
            help='Set logging level (default from LOG_LEVEL or INFO)'
        )

        subparsers = parser.add_subparsers(dest='command', help='Available commands')

        # Serve command
        serve_parser = subparsers.add_parser('serve', help='Run the HTTP server')
        serve_parser.add_argument('--host', default=None, help='Bind address (default from HOST)')
        serve_parser.add_argument('--port', type=int, default=None, help='Port (default from PORT or 4000)')
        serve_parser.add_argument('--debug', action='store_true', help='Enable Flask debug mode')

        # Config command
        subparsers.add_parser('config', help='Show the effective configuration without secrets')

        # Cache commands
        cache_parser = subparsers.add_parser('cache', help='Inspect the profile cache')
        self._cache_parser = cache_parser
        cache_sub = cache_parser.add_subparsers(dest='cache_command', help='Cache commands')
        cache_sub.add_parser('list', help='List cached users')
        show_parser = cache_sub.add_parser('show', help='Show one cached user')
        show_parser.add_argument('user_id', help='Spotify user id')

        return parser

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            logger = logging.getLogger(__name__)
            logger.warning(f"Received signal {signum}, shutting down gracefully...")
            self._cleanup_resources()
            sys.exit(130)  # Standard exit code for signal termination

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def _cleanup_resources(self) -> None:
        """Log total execution time."""
        logger = logging.getLogger(__name__)
        if self._start_time:
            duration = time.time() - self._start_time
            logger.info(f"CLI execution time: {duration:.2f}s")

    def _serve(self, args: argparse.Namespace, settings: Settings) -> None:
        """Run the HTTP server until interrupted."""
        from wavestats.interfaces.http import HTTPServer

        settings.validate()
        self._setup_signal_handlers()
        server = HTTPServer(settings, debug=args.debug)
        server.run(host=args.host, port=args.port)

    def _show_config(self, settings: Settings) -> None:
        print(json.dumps(settings.summary(), indent=2))

    def _cache(self, args: argparse.Namespace, settings: Settings) -> None:
        """Print cached user profiles."""
        store = JsonProfileStore(settings.profile_db_path)

        if args.cache_command == 'list':
            users = store.all()
            print(f"Cached users in {settings.profile_db_path}:")
            print("-" * 50)
            for user in users:
                print(f"{user.id}: {user.display_name or '-'} "
                      f"(followers: {user.followers}, top tracks: {len(user.top_tracks)})")
        elif args.cache_command == 'show':
            user = store.get(args.user_id)
            if user is None:
                print(f"User {args.user_id} is not cached", file=sys.stderr)
                sys.exit(1)
            print(json.dumps(user.to_json(), indent=2, ensure_ascii=False))
        else:
            self._cache_parser.print_help()
            sys.exit(1)

    def run(self, argv: Optional[List[str]] = None) -> None:
        """Run the CLI."""
        self._start_time = time.time()
        args = self.parser.parse_args(argv)

        if not args.command:
            self.parser.print_help()
            sys.exit(1)

        load_dotenv()
        logger = logging.getLogger(__name__)

        try:
            settings = setup_config()
            setup_logging(args.log_level or settings.log_level, settings.log_file)

            if args.command == 'serve':
                self._serve(args, settings)
            elif args.command == 'config':
                self._show_config(settings)
            elif args.command == 'cache':
                self._cache(args, settings)
            else:
                self.parser.print_help()
                sys.exit(1)

        except KeyboardInterrupt:
            logger.warning("Operation cancelled by user")
            sys.exit(130)
        except (ConfigError, ProfileStoreError) as e:
            logger.error(f"CLI error: {e}")
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        finally:
            self._cleanup_resources()


def main():
    """Main entry point."""
    cli = CLI()
    cli.run()


if __name__ == '__main__':
    main()
