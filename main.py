"""
Lead pipeline scheduler - main entry point.

Usage:
  python main.py schedule start "plumbers in Austin TX"
  python main.py queue stats
  python main.py pipeline run https://example.com --no-deploy

See `python main.py --help` for all commands.
"""

import sys

from dotenv import load_dotenv

from src.pipeline.cli import main


# Load environment variables
load_dotenv()


if __name__ == "__main__":
    sys.exit(main())
