#!/usr/bin/env python3
"""
wavestats HTTP Server Runner
"""

from dotenv import load_dotenv

from wavestats.crosscutting.config import setup_config
from wavestats.crosscutting.logging import setup_logging
from wavestats.interfaces.http import HTTPServer


def main():
    """Run the HTTP server."""
    load_dotenv()
    settings = setup_config()
    settings.validate()
    setup_logging(settings.log_level, settings.log_file)

    server = HTTPServer(settings, debug=True)
    server.run()


if __name__ == '__main__':
    main()
