# (c) Copyright 2022 Aaron Kimball

from espmon.term import MsgLevel

MON_CONF_FMT_VERSION = 1


def load_config_file(print_q, filename, map_name='config', defaults=None):
    """
        Read a monitor configuration file map.
        This is actually a python file that will be evaluated in a sterile environment.
        It should contain two variables afterward:
        - `formatversion` specifies this serialization version
        - `{map_name}` is a dict of k-v pairs.

        If `defaults` is a map, then its values populate anything omitted from the loaded map.

        TODO(aaron): This is insecure.
    """
    if defaults is None:
        defaults = {}
    new_conf = defaults.copy()

    # The loaded config will be a map named '{map_name}' within an otherwise-empty environment
    init_env = {}
    init_env[map_name] = {}

    with open(filename, "r") as f:
        conf_text = f.read()
        try:
            exec(conf_text, init_env, init_env)
        except Exception:
            # error parsing or executing the config file.
            print_q.put((f"Warning: error parsing config file '{filename}'", MsgLevel.WARN))
            init_env[map_name] = {}
            init_env['formatversion'] = MON_CONF_FMT_VERSION

    try:
        fmtver = init_env['formatversion']
        if not isinstance(fmtver, int) or fmtver > MON_CONF_FMT_VERSION:
            print_q.put((f"Error: Cannot read config file '{filename}' with version {fmtver}",
                         MsgLevel.ERR))
            init_env[map_name] = {} # Disregard the unsupported configuration data.

        loaded_conf = init_env[map_name]
        if not isinstance(loaded_conf, dict):
            raise TypeError(f'{map_name} is not a dict')
    except (KeyError, TypeError):
        print_q.put((f"Error in format for config file '{filename}'", MsgLevel.ERR))
        loaded_conf = {}

    # Merge loaded data on top of our default config.
    for (k, v) in loaded_conf.items():
        new_conf[k] = v

    return new_conf
