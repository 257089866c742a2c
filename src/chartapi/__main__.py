import logging
import os

import uvicorn


def configure_logging() -> None:
    logging.basicConfig(
        level=os.getenv("CHARTAPI_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main() -> int:
    configure_logging()
    host = os.getenv("CHARTAPI_HOST", "0.0.0.0")
    port = int(os.getenv("CHARTAPI_PORT", os.getenv("PORT", "8000")))
    uvicorn.run("chartapi.app:app", host=host, port=port)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
