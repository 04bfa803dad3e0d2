import os
import threading

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from core.config import cfg
from core.log import get_logger

logger = get_logger(__name__)

DEFAULT_DB_URL = "sqlite:///data/exam_bank.db"


class Db:
    def __init__(self, url: str):
        self.url = url
        self._lock = threading.Lock()
        self._tables_ready = False
        self.engine = self._create_engine(url)
        self.SessionLocal = sessionmaker(bind=self.engine, autocommit=False, autoflush=False)

    def _create_engine(self, url: str):
        if url.startswith("sqlite"):
            path = url.split("///", 1)[-1]
            folder = os.path.dirname(path)
            if path and path != ":memory:" and folder:
                os.makedirs(folder, exist_ok=True)
            # 后台 worker 与批量审核线程共享同一个库文件
            return create_engine(
                url,
                connect_args={"check_same_thread": False, "timeout": 30},
                pool_pre_ping=True,
            )
        return create_engine(url, pool_pre_ping=True, pool_size=10, max_overflow=20)

    def create_tables(self) -> None:
        with self._lock:
            if self._tables_ready:
                return
            from core.models.base import Base
            import core.models  # noqa: F401  注册全部模型

            Base.metadata.create_all(self.engine)
            self._tables_ready = True
            logger.info("数据库表已就绪: %s", self.url.split("@")[-1])

    def get_session(self):
        return self.SessionLocal()


DB = Db(str(cfg.get("db", "") or os.getenv("DB", "") or DEFAULT_DB_URL))
