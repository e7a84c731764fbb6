"""
Núcleo de emissão de Vale-Pedágio Obrigatório (VPO) via NDD Cargo
"""
