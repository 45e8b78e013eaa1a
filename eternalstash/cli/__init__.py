"""EternalStash command-line interface.

Exposes:
    cli -- Click group entry point (registered as ``eternalstash`` script).
"""

from eternalstash.cli.main import cli

__all__ = ["cli"]
