"""
队列消息模型（JSON 数组中的每一条记录）。

JSON 形态（键名即持久化格式）：

    {"id": "...", "from": "sandbox", "action": "notify", "args": ["hi"],
     "timestamp": 1700000000000, "status": "pending"}

说明：
- `from` 是 Python 关键字，模型字段名为 `origin`，序列化时使用别名 `from`。
- 只写入显式设置过的字段（`status` 总是写入）；读入的 `null` 原样写回。
- 允许并保留未知字段，避免覆盖其它工具写入的数据。
- 从文件读入且之后未被修改的记录，重写时按原始 dict 输出（键序、数值类型不变）。
"""

from __future__ import annotations

from copy import deepcopy
import time
import uuid
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

Origin = Literal["sandbox", "host"]
Status = Literal["pending", "claimed", "done"]


def now_ms() -> int:
    """当前 epoch 毫秒。"""

    return int(time.time() * 1000)


def new_message_id() -> str:
    """生成全局唯一的关联 id。"""

    return uuid.uuid4().hex


class MessageResponse(BaseModel):
    """处理结果（`status == "done"` 时写入）。"""

    model_config = ConfigDict(extra="allow")

    success: bool
    output: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, output: Optional[str] = None) -> "MessageResponse":
        if output is None:
            return cls(success=True)
        return cls(success=True, output=output)

    @classmethod
    def fail(cls, error: str, *, output: Optional[str] = None) -> "MessageResponse":
        if output is None:
            return cls(success=False, error=error)
        return cls(success=False, error=error, output=output)

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class Message(BaseModel):
    """队列中的一条请求（及其响应）。"""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    origin: Origin = Field(alias="from")
    action: str
    args: Optional[List[str]] = None
    timestamp: Union[int, float]
    status: Status = "pending"
    claimed_by: Optional[str] = Field(default=None, alias="claimedBy")
    response: Optional[MessageResponse] = None

    # (原始记录, 读入时的序列化结果)；仅从文件读入的消息有值。
    _wire: Optional[Tuple[Dict[str, Any], Dict[str, Any]]] = PrivateAttr(default=None)

    def model_post_init(self, _context: Any) -> None:
        self.model_fields_set.add("status")

    @classmethod
    def create(cls, *, origin: Origin, action: str, args: Optional[List[str]] = None) -> "Message":
        """创建一条新的 pending 消息（id 与时间戳由本函数生成；`args` 为 None 时不写入）。"""

        fields: Dict[str, Any] = {
            "id": new_message_id(),
            "origin": origin,
            "action": action,
            "timestamp": now_ms(),
            "status": "pending",
        }
        if args is not None:
            fields["args"] = list(args)
        return cls(**fields)

    @classmethod
    def from_wire(cls, record: Mapping[str, Any]) -> "Message":
        """
        解析一条持久化记录，并记住原始形态。

        异常：
        - pydantic.ValidationError：记录不符合消息模型
        """

        msg = cls.model_validate(record)
        msg._wire = (deepcopy(dict(record)), msg.model_dump(by_alias=True, exclude_unset=True))
        return msg

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"

    @property
    def is_done(self) -> bool:
        return self.status == "done"

    def age_ms(self, now: Optional[int] = None) -> float:
        return (now_ms() if now is None else now) - self.timestamp

    def to_json_dict(self) -> Dict[str, Any]:
        """按持久化格式（别名键、只含显式设置的字段）导出；未修改的读入记录原样返回。"""

        data = self.model_dump(by_alias=True, exclude_unset=True)
        if self._wire is not None and self._wire[1] == data:
            return deepcopy(self._wire[0])
        return data
