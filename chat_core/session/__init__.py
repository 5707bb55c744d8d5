"""会话层。

包含：
- assembler: 把协议事件折叠进助手消息。
- classifier: 把失败映射为 network / protocol / upstream / cancelled。
- chat_session: 会话状态机。
"""
