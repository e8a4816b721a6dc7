from __future__ import annotations

import argparse

import uvicorn


def main() -> None:
    # Serve the API with env-driven settings; services are built in the app lifespan.
    parser = argparse.ArgumentParser(description="Run the DataPilot API server.")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()
    uvicorn.run("datapilot.apps.api.main:app", host=args.host, port=args.port)


if __name__ == "__main__":
    main()
