"""Package entry point for ``python -m mixmerge``.

WHY: Operators start the API with ``python -m mixmerge serve`` and run
one-off local merges with ``python -m mixmerge merge a.mp3 b.mp3 -o out.mp3``.

HOW: Delegates straight to the CLI's main() function.
"""

from mixmerge.cli import main

if __name__ == "__main__":
    main()
