"""Daemon-side services: workspaces, external commands, voices and toolchains."""
