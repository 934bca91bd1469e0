"""Entry point: python -m refman <command>"""

from refman.cli import main

if __name__ == "__main__":
    main()
