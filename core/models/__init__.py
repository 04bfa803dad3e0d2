# 教材与知识点
from .material import Material
from .knowledge_point import KnowledgePoint
# 生成任务
from .generation_task import GenerationTask
# 试题
from .question import Question
# 导入基础模型
from .base import *
