"""
核心模块包 (Core Module Package)

规则引擎的基础设施组件：配置管理、异常定义、数据库连接和 Redis 客户端。

Infrastructure components of the rule engine: configuration management,
exception definitions, database connections and the Redis client.
"""
