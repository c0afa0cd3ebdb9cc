"""Run the Stockcast API (and its evaluation loop) under uvicorn."""
import os

import uvicorn

from stockcast.api.app import create_app

app = create_app(use_lifespan=True)


if __name__ == "__main__":
    uvicorn.run(
        app,
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
    )
