"""Start the FastAPI application"""

import uvicorn

from couplediet.config import settings


if __name__ == "__main__":
    uvicorn.run(
        "couplediet.main:app",
        host=settings.backend_host,
        port=settings.backend_port,
        reload=settings.backend_reload,
    )
