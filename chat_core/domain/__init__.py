"""领域层模型与协议。

包含：
- models: 流式事件负载、角色/状态/反馈等取值类型。
- conversation: Session / Message / StreamTask 内存模型。
- exceptions: 业务异常类型定义。
"""
