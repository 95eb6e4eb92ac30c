"""聊天服务"""
