"""
Pipeline de emissão VPO: merge de dados, validação, rotas e orquestração
"""
