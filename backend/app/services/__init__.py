# ARI Services
# 服务模块按需直接导入（app.services.xxx_service），此处不做聚合导入，
# 以免 app.security.context -> app.services.errors 形成循环导入
