"""Allow ``python -m paracat``."""

from __future__ import annotations

from paracat.cli import main


if __name__ == '__main__':
    raise SystemExit(main())
