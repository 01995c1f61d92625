# livetree - live directory structure mirror
"""
Main entry point for livetree.

Serves the structure WebSocket and the project API:
    python main.py [ROOT] [--host HOST] [--port PORT]
"""

import argparse
import os


def main(argv=None):
    """Parse arguments and run the server"""
    parser = argparse.ArgumentParser(description="Mirror a directory tree to connected viewers")
    parser.add_argument("root", nargs="?", help="directory to watch at startup")
    parser.add_argument("--host", default=None)
    parser.add_argument("--port", type=int, default=None)
    args = parser.parse_args(argv)

    if args.root:
        # Settings read the startup root from the environment on import
        os.environ["LIVETREE_ROOT"] = args.root

    # backend loads .env before settings are imported
    from backend import run_server
    from config import settings

    run_server(host=args.host or settings.HOST, port=args.port or settings.PORT)


if __name__ == "__main__":
    main()
