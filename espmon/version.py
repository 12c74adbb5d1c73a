# (c) Copyright 2021 Aaron Kimball

MON_VERSION = [0, 1, 0]
MON_VERSION_STR = '.'.join(map(str, MON_VERSION))
FULL_MON_VERSION_STR = f'ESP serial monitor (espmon) version {MON_VERSION_STR}'

if __name__ == '__main__':
    print(FULL_MON_VERSION_STR)
