"""
main.py
========
Central entry point for the ReturnGuard API.

Run with:
    uvicorn main:app --reload
"""

import logging

from dotenv import load_dotenv

load_dotenv()  # Load .env before any module reads env vars

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

# Keep OpenAI / HTTP transport chatter out of the decision logs
for _transport_logger_name in (
    "openai",
    "openai._base_client",
    "httpx",
    "httpcore",
    "aiohttp.access",
):
    logging.getLogger(_transport_logger_name).setLevel(logging.WARNING)

from returnguard.api.app import create_app  # noqa: E402

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=True)
