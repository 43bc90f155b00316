"""
agewage: effects of age-based minimum-wage thresholds on labour-market
outcomes from harmonized labour-force survey waves.
"""

__version__ = "0.1.0"
