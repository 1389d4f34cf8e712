"""CLI entry point for reelcast.cli module.

Enables execution via: python -m reelcast.cli (runs the video worker)
"""

from reelcast.cli.run_worker import main

if __name__ == "__main__":
    main()
