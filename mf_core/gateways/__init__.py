"""
外部系统集成（承运商、支付网关、打款服务）
"""
