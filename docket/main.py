from __future__ import annotations

import os

import uvicorn


def main() -> None:
    host = os.getenv("DOCKET_HOST", "127.0.0.1")
    port = int(os.getenv("DOCKET_PORT", "8080"))
    uvicorn.run("docket.web_admin:create_app", factory=True, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
