"""Memory allocators, paging, terminal, shell and main loop of a small x86-64 kernel, on simulated hardware."""

__version__ = "0.1.0"