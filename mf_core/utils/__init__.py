"""
MarketFlow 工具模块
"""
