"""Command line, bot orchestration and operator-facing output."""
