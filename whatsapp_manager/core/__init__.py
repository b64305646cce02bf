"""核心模块: 存储引擎, 事件同步, 内容缓存"""
