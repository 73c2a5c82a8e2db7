# src/shoptrans/domain/__init__.py
"""纯领域逻辑：指纹、诊断、优先级与内容变换，不依赖任何 I/O。"""
