"""工具函数"""
