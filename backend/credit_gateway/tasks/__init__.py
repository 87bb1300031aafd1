"""后台任务"""
