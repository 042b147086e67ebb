"""
SQL 标识符工具
"""


def quote_identifier(name: str) -> str:
    """
    SQL Server 方括号标识符

    示例:
        >>> quote_identifier("Order Lines")
        '[Order Lines]'
        >>> quote_identifier("a]b")
        '[a]]b]'
    """
    if not name:
        raise ValueError("标识符不能为空")
    return "[" + name.replace("]", "]]") + "]"


def quote_mysql_identifier(name: str) -> str:
    """
    MySQL 反引号标识符

    示例:
        >>> quote_mysql_identifier("order`s")
        '`order``s`'
    """
    if not name:
        raise ValueError("标识符不能为空")
    return "`" + name.replace("`", "``") + "`"


def qualified_name(schema: str, table: str) -> str:
    """[schema].[table]"""
    return f"{quote_identifier(schema)}.{quote_identifier(table)}"

