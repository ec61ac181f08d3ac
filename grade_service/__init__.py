# 成绩平均分与排名服务
__version__ = "1.0.0"
