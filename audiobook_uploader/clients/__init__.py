"""HTTP clients for external services (Vbee, Gemini, Douyin, YouTube)."""
