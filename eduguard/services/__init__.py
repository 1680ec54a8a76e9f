"""eduguard services.

Enforcement layer for analytics endpoints:
- Rate Limit Service counts requests per caller and endpoint class
- Privacy Service suppresses small cohorts and blocks PII
- Audit Service keeps the append-only access trail
- Export Service guards bulk exports
- Gateway Service composes the above around domain handlers
"""
