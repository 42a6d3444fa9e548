"""
Durasaga CLI - Command-line interface for the workflow engine.

Running:
    durasaga run-order --product-id 1 --price 10 --quantity 2
    durasaga run-order --product-id 999 --price 10 --quantity 1   # compensates

Inspection (against the configured history storage):
    durasaga list --status failed
    durasaga status order-1-1700000000000
    durasaga history order-1-1700000000000

Operations:
    durasaga cancel order-1-1700000000000
    durasaga recover

Storage and queues come from ``--config durasaga.yaml`` or the
DURASAGA_* environment variables (a .env file is honoured).

This creates the 'durasaga' command via entry point in pyproject.toml.
"""


def main():
    """Main entry point for the durasaga CLI."""
    from durasaga.cli.app import cli

    cli()


if __name__ == "__main__":
    main()
