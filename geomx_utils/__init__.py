"""GeoMx spatial transcriptomics QC and processing utilities"""
