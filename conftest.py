# Root conftest: its presence makes pytest put the project root on sys.path,
# so `services` and `shared` import without an editable install.
