"""
Services package - 存储、调度与调度短语解析

各模块按需直接导入（scheduler 依赖 sequencer.engine，避免在包初始化时产生循环导入）
"""
