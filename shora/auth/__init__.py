"""Identity contract supplied by the upstream auth gateway."""
