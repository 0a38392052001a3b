# backend/db.py
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
import os

# 导入 models 包（会执行 __init__.py，注册所有模型）
from . import models
from .config import get_settings


def make_engine(url: str):
    connect_args = {}
    if url.startswith("sqlite"):
        # worker 线程和请求线程共用连接池
        connect_args["check_same_thread"] = False
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True)


SQLALCHEMY_DATABASE_URL = get_settings().database_url
engine = make_engine(SQLALCHEMY_DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind=None):
    bind = bind or engine
    url = bind.url
    if url.drivername.startswith("sqlite") and url.database and url.database != ":memory:":
        directory = os.path.dirname(os.path.abspath(url.database))
        os.makedirs(directory, exist_ok=True)
    # 使用 models.Base 创建所有表
    models.Base.metadata.create_all(bind=bind)
