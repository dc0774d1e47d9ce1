"""
Preview Sandbox - HTTP service

Serves the sandbox orchestrator over HTTP. Run with:

    uvicorn app:app --host 0.0.0.0 --port 8000

Configuration comes from environment variables or a .env file
(see preview_sandbox/config.py).
"""

from preview_sandbox.api import create_app

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app:app", host="0.0.0.0", port=8000)
