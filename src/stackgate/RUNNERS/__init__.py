"""Process execution and dependency ordering."""
