"""Document chunking and vectorization pipeline."""
