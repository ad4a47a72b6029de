import uvicorn  # type: ignore

from access_admin.core import config
from access_admin.utils import get_logger

log = get_logger(__name__)

if __name__ == "__main__":
    log.info("Serving access admin on %s:%s (authority: %s)", config.HOST, config.PORT, config.AUTHORITY_BASE_URL)
    uvicorn.run("access_admin.main:app", reload=config.RELOAD, host=config.HOST, port=config.PORT)
