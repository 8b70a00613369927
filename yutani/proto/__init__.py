"""Runtime support for yutani generated protocol modules."""
