"""
Entrypoint for running the backend server.
The scheduler runs inside this process, so run a single worker per instance;
the redis sweep lock keeps multiple instances from sweeping at the same time.
"""
import os

import uvicorn

from wishlisty.main import app

if __name__ == "__main__":
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))
