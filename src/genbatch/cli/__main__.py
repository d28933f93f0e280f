"""CLI entry point for genbatch.cli module.

Enables execution via: python -m genbatch.cli run prompts.txt
"""

from genbatch.cli.run_batch import main

if __name__ == "__main__":
    raise SystemExit(main())
