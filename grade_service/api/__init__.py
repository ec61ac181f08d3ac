# HTTP接口层
