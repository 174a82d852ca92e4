#!/usr/bin/env python3
"""
Off-ramp service launcher.

Usage:
    python run.py
    python run.py --port 5000 --reload
"""
import argparse
import uvicorn


def main():
    parser = argparse.ArgumentParser(description="UPI Crypto Off-ramp Service")
    parser.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=5000, help="Bind port (default: 5000)")
    parser.add_argument("--reload", action="store_true", help="Enable hot reload for development")

    args = parser.parse_args()

    print(f"""
    ========================================================
      UPI Crypto Off-ramp Service
      API:       http://{args.host}:{args.port}
      Docs:      http://localhost:{args.port}/docs
      WebSocket: ws://localhost:{args.port}/ws
    ========================================================
    """)

    # One worker: the in-memory store and the subscriber set live in-process
    uvicorn.run(
        "offramp.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
    )


if __name__ == "__main__":
    main()
