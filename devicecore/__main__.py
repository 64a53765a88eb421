"""Entry point for running devicecore as a module: python -m devicecore."""

from devicecore.cli.commands import app

if __name__ == "__main__":
    app()
