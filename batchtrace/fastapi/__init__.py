# batchtrace/fastapi/__init__.py
