"""autochat 顶层包。

该包驱动与对话后端的自动化对话：发送 prompt、读取回复、从回复中解析
命令并执行、把执行结果作为下一条 prompt，直到目标完成或步数用尽。
包括配置加载、领域模型、节流、记忆裁剪、后端适配、命令系统与运行模式。
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
