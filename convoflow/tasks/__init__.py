"""
Celery 任务定义入口。

action_queue.*: 动作队列的周期性维护任务（见 convoflow.tasks.action_queue）。
"""
