"""Allow ``python -m nixmodule``."""

from nixmodule.runner import main

if __name__ == "__main__":
    main()
