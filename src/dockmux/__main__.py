"""dockmux CLI bootstrap."""

from __future__ import annotations

from dockmux.cli import app

if __name__ == "__main__":
    app()
