"""命令安全策略（runTerminalCommand 执行前的破坏性模式检测）。"""
