"""文件管理业务包：以文件夹/文件树的形式管理上传内容。"""

from app.packages.types import AppPackage

from .api.v1 import api_router
from .core.config import get_settings
from .core.exceptions import generic_exception_handler, http_exception_handler, validation_exception_handler
from .core.logger import logger, setup_logging
from .db.init_db import init_db

package = AppPackage(
    name="filemanager",
    api_router=api_router,
    get_settings=get_settings,
    setup_logging=setup_logging,
    logger=logger,
    init_db=init_db,
    http_exception_handler=http_exception_handler,
    validation_exception_handler=validation_exception_handler,
    generic_exception_handler=generic_exception_handler,
)

__all__ = ["package", "api_router", "get_settings"]
