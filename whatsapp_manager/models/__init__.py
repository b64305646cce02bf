"""数据模型"""
