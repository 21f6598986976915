from __future__ import annotations

from toolbridge.cli import main

if __name__ == "__main__":
    main()
