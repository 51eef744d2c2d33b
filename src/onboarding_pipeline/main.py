import logging
import os

import uvicorn


def run():
    """Serve the verification API (HOST/PORT/LOG_LEVEL from the environment)."""
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        uvicorn.run(
            "onboarding_pipeline.api:app",
            host=os.getenv("HOST", "127.0.0.1"),
            port=int(os.getenv("PORT", "8000")),
        )
    except Exception as e:
        raise Exception(f"An error occurred while running the verification API: {e}")


if __name__ == "__main__":
    run()
