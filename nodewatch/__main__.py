from __future__ import annotations

from nodewatch.daemon import run

if __name__ == "__main__":
    run()
