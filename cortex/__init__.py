"""
Cortex - Нейронный слой узла
============================

[NEURAL] Вычислительная часть узла поверх P2P канала:
- distributed: распределённый inference модели, разрезанной на две половины
"""
