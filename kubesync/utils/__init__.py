"""Utility modules for kubesync."""

from .ignore_rules import (
    get_ignore_rules_from_directory,
    get_abs_glob_exps,
    is_glob_exp_match,
)
from .resource_naming import (
    namespace_object_name,
    get_app_root_volume_name,
    get_dns1123_name,
    convert_labels_to_selector,
    parse_image_name,
)

__all__ = [
    'get_ignore_rules_from_directory',
    'get_abs_glob_exps',
    'is_glob_exp_match',
    'namespace_object_name',
    'get_app_root_volume_name',
    'get_dns1123_name',
    'convert_labels_to_selector',
    'parse_image_name',
]
