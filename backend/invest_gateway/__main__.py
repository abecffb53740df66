"""Run the gateway: `python -m invest_gateway`."""

from invest_gateway.lifecycle import main

if __name__ == "__main__":
    main()
