"""Allow running the dispatcher as a module: python -m eventqueue."""

from eventqueue.runner import main

if __name__ == "__main__":
    main()
