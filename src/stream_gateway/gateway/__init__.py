"""会话状态机（send / regenerate / cancel / reconnect）。"""
