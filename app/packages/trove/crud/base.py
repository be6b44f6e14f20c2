"""CRUD 基类：为各实体提供通用的数据访问方法。"""

from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from sqlalchemy.orm import Query, Session

from app.packages.trove.core.timezone import utcnow
from app.packages.trove.models.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class CRUDBase(Generic[ModelType]):
    """封装常见的查询、创建与保存逻辑，减少重复代码。"""

    def __init__(self, model: Type[ModelType]):
        self.model = model

    def get(self, db: Session, id: Any, *, include_deleted: bool = False) -> Optional[ModelType]:
        return self.query(db, include_deleted=include_deleted).filter(self.model.id == id).first()

    def get_multi(self, db: Session, *, skip: int = 0, limit: int = 100) -> List[ModelType]:
        return self.query(db).offset(skip).limit(limit).all()

    def create(self, db: Session, obj_in: Dict[str, Any], *, auto_commit: bool = True) -> ModelType:
        db_obj = self.model(**obj_in)
        db.add(db_obj)
        if auto_commit:
            db.commit()
            db.refresh(db_obj)
        else:
            db.flush()
        return db_obj

    def save(self, db: Session, db_obj: ModelType, *, auto_commit: bool = True) -> ModelType:
        db.add(db_obj)
        if auto_commit:
            db.commit()
            db.refresh(db_obj)
        return db_obj

    def soft_delete(self, db: Session, db_obj: ModelType, *, auto_commit: bool = True) -> ModelType:
        """写入删除时间戳；模型不支持软删除时直接物理删除。"""
        if hasattr(db_obj, "deleted_at"):
            db_obj.deleted_at = utcnow()
            db.add(db_obj)
        else:
            db.delete(db_obj)
        if auto_commit:
            db.commit()
        return db_obj

    def hard_delete(self, db: Session, db_obj: ModelType, *, auto_commit: bool = True) -> None:
        """物理删除行。"""
        db.delete(db_obj)
        if auto_commit:
            try:
                db.commit()
            except Exception:
                db.rollback()
                raise

    # 统一构造带软删除过滤的查询
    def query(self, db: Session, *, include_deleted: bool = False) -> Query:
        query = db.query(self.model)
        if hasattr(self.model, "deleted_at") and not include_deleted:
            query = query.filter(self.model.deleted_at.is_(None))
        return query
