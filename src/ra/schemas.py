"""
跨模块共享的数据模型基类。
"""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """
    对外 JSON 使用 camelCase 键名，Python 侧仍使用 snake_case 字段。
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
