"""
wasession CLI.

Commands:
- run:    connect and print inbound messages until interrupted
- send:   connect, wait for the session to open, send one message
- status: show the configured session and whether credentials are stored
"""

import typer

from wasession.cli.commands import configure_logging, register_commands

app = typer.Typer(help="wasession - persistent messaging session manager")


@app.callback()
def main(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging (DEBUG level)"
    ),
):
    """
    wasession - persistent messaging session manager.
    """
    configure_logging(verbose)


register_commands(app)

if __name__ == "__main__":
    app()
