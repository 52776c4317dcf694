from dotenv import load_dotenv

load_dotenv(override=True)

from p12relay.cli import main

if __name__ == "__main__":
    main()
