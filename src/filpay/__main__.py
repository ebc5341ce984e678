"""Entry point for ``python -m filpay``."""

from filpay.cli import main

if __name__ == "__main__":
    main()
