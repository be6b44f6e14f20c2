"""模型汇总导出，确保 ``Base.metadata`` 能感知全部数据表。"""

from app.packages.trove.models.base import Base
from app.packages.trove.models.file_record import FileRecord
from app.packages.trove.models.folder import Folder
from app.packages.trove.models.session import SessionRecord
from app.packages.trove.models.user import User

__all__ = ["Base", "FileRecord", "Folder", "SessionRecord", "User"]
