"""Command line tools for livegraph."""
