"""Allow `python -m mailbox_relay` to invoke the CLI entry-point."""

from .cli import app


def main() -> None:
    app(prog_name="mailbox-relay")


if __name__ == "__main__":  # pragma: no cover - manual execution path
    main()
