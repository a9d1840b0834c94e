from ddx.cli.commands import cli

if __name__ == "__main__":
    cli()
