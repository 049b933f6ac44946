"""Daemon orchestration: status machine, language progress, dispatch and scheduling."""
