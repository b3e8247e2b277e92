# Simple local runner. Deployments should start with:
#   uvicorn ilovevideo.main:app --host 0.0.0.0 --port 3001
import os

from ilovevideo.main import app

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "3001")))
