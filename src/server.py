import uvicorn
from dotenv import load_dotenv

load_dotenv()

from integram_compat.settings import settings
from integram_compat.server import startup_logic

if __name__ == "__main__":

    if settings.DEBUG_MODE != "production":
        startup_logic()

    uvicorn.run("integram_compat.server:app", host="0.0.0.0", port=8000, log_level="debug",
                reload=settings.DEBUG_MODE != "production", workers=1)
