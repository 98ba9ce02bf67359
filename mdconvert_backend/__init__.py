"""Backend for the Markdown -> PDF/DOCX conversion API.

This package keeps the FastAPI route handlers in server.py thin:
- URL safety checks and remote image inlining (SSRF protection)
- sandboxed headless-Chromium PDF rendering
- HTML clean-up for the DOCX serializer

Security note:
Markdown arrives from untrusted clients. Nothing it references is fetched
except through the image proxy, the PDF renderer may only reach the font CDN,
and the DOCX serializer never performs I/O of its own.
"""
