"""HTTP operations surface"""
