from __future__ import annotations

from nebi_bot.app import main


if __name__ == "__main__":
    main()
