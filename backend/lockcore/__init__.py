"""
lockcore - 域无关的基础设施
"""
