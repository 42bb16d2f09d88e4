"""Application entrypoint."""

from __future__ import annotations

from mastodon_orchestrator.cli import cli


def main() -> None:
    """Run the command-line interface."""
    cli(prog_name="mastodon-orchestrator")


if __name__ == "__main__":
    main()
