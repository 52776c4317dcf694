from p12relay.cli import cli

if __name__ == "__main__":
    cli()
