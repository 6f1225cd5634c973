"""
Startup script for the LessonChat API
"""
import os
import uvicorn
from lessonchat.main import app

if __name__ == "__main__":
    port = int(os.environ.get("PORT", "8000"))
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=port,
        reload=False,
        log_level="info",
        workers=1
    )
