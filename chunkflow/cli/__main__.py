"""Allow ``python -m chunkflow.cli`` execution."""

from chunkflow.cli.ingest import main

main()
