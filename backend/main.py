import os

import uvicorn

if __name__ == "__main__":
    # 开发模式自动重载，生产环境设置 RELOAD=0
    is_dev = os.getenv("RELOAD", "1") != "0"

    uvicorn.run(
        "portal.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
        reload=is_dev,
        log_level="info"
    )
