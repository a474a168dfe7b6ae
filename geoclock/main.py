from geoclock.app import ClockAgentApp
from geoclock.logging_setup import setup_logging


def main() -> None:
    logger = setup_logging()
    ClockAgentApp(logger).run()


if __name__ == "__main__":
    main()
