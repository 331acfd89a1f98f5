"""
异常定义模块
"""


class DataQualityError(ValueError):
    """
    数据质量异常

    当输入数据在数值上退化、无法继续计算时抛出，例如：
    - 总计数为 0 的细胞
    - 非正的 size factor
    - 奇异的线性方程组
    - 点数不足以拟合曲线或趋势
    """
    pass
