"""Allow running the admin API as a module: python -m eventrelay."""

from eventrelay.runner import main

if __name__ == "__main__":
    main()
