# batchtrace/routes/__init__.py
