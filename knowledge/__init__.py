"""
measurelab knowledge base.

Contains reference data that is kept out of code:
- Clinical data warehouse schema map (warehouse/hdi_schema.yaml)
- Sample measures and test patients (samples/)
"""
