"""
数据库连接模块

管理数据库引擎的创建。
使用 SQLModel 的 create_engine 创建数据库连接池。

重要提示：
- 数据库表结构通过 Alembic 迁移管理，不要在这里创建表
- 确保在使用前导入所有模型（iap_backend.models），否则关系可能无法正确初始化
"""
from sqlmodel import create_engine  # SQLModel 的数据库工具

from iap_backend.core.config import settings

# 创建数据库引擎（连接池）
# pool_pre_ping: 每次取出连接前先探活，避免使用已被服务端关闭的连接
engine = create_engine(settings.SQLALCHEMY_DATABASE_URI, pool_pre_ping=True)
