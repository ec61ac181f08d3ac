# 数据访问层
