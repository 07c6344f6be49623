"""directory/ -- Paginated, filterable, sortable account listing and administration.

Layer rule: directory/ may import from auth/ and core/. It does NOT import
from api/. auth/ never imports from directory/.
"""
