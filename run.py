import logging
import os

import uvicorn

from chat_digest import create_app
from chat_digest.core.config import configure_logging

configure_logging()

app = create_app()

if __name__ == "__main__":
    # Start the FastAPI server; Telegram posts updates to /webhook/telegram
    logging.info("Chat digest server starting...")
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
